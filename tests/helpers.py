import logging
import shutil
import datetime
import tempfile
import unittest

from eth_account import Account
from eth_account.messages import encode_defunct

from recordshare.errors import StoreUnavailable
from recordshare.service import RecordShareService
from recordshare.stores import LocalBlobStore, MemoryTableStore

logging.getLogger("recordshare").setLevel(logging.CRITICAL)

# Well-known development keys; addresses are derived, never hard-coded
TEST_ACCOUNTS = {
    "Patient 1": "0x91e5c2bed81b69f9176b6404710914e9bf36a6359122a2d1570116fc6322562e",
    "Doctor 1": "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80",
    "Doctor 2": "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d",
    "Patient 2": "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a",
}

START = datetime.datetime(2024, 1, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


def address_of(private_key: str) -> str:
    return Account.from_key(private_key).address


def sign_challenge(challenge: str, private_key: str) -> str:
    signed = Account.sign_message(encode_defunct(text=challenge), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


class FakeClock:
    """Injectable clock that only moves when told to"""

    def __init__(self, now: datetime.datetime = START):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> datetime.datetime:
        self.now = self.now + datetime.timedelta(seconds=seconds)
        return self.now


class FlakyBlobStore(LocalBlobStore):
    """Local blob store that can be switched off to simulate an outage"""

    def __init__(self, root: str, **kwargs):
        super().__init__(root, **kwargs)
        self.available = True
        self.puts = 0

    def put(self, data: bytes) -> str:
        if not self.available:
            raise StoreUnavailable("Blob store is down")
        self.puts += 1
        return super().put(data)

    def get(self, locator: str) -> bytes:
        if not self.available:
            raise StoreUnavailable("Blob store is down")
        return super().get(locator)

    def is_available(self) -> bool:
        return self.available


class ServiceSetUpMixin:
    """Builds a service over temporary storage with two patients and two doctors"""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir, ignore_errors=True)
        self.clock = FakeClock()
        self.blob_store = FlakyBlobStore(f"{self.tmpdir}/blobs")
        self.table_store = self.make_table_store()
        self.service = RecordShareService(
            self.blob_store, self.table_store, pending_dir=f"{self.tmpdir}/pending", clock=self.clock,
        )
        for profile_id, role in (("patient-1", "patient"), ("patient-2", "patient"),
                                 ("doctor-1", "doctor"), ("doctor-2", "doctor")):
            self.service.identity.register_profile(profile_id, role, profile_id.title())

    def make_table_store(self):
        return MemoryTableStore()

    def later(self, seconds: float) -> datetime.datetime:
        return self.clock.now + datetime.timedelta(seconds=seconds)

    def upload(self, patient_id="patient-1", data=b"blood test results", file_name="labs.pdf",
               mime_type="application/pdf", tags=None):
        result = self.service.upload_record(patient_id, data, mime_type, file_name, tags)
        assert result.error is None, result.message
        return result.data


class ServiceTestCase(ServiceSetUpMixin, unittest.TestCase):
    pass
