"""
API tests for the record sharing service.

Covers the HTTP surface end to end:
1. Profile registration with a signed wallet challenge
2. Wallet login and sessions
3. Records, grants and signed downloads
4. Access requests, shared files and reconciliation
"""

import base64
import shutil
import datetime
import tempfile
import unittest

from fastapi.testclient import TestClient

from recordshare.api import SessionStore, create_app
from recordshare.service import RecordShareService
from recordshare.stores import MemoryTableStore

from tests.helpers import TEST_ACCOUNTS, FlakyBlobStore, address_of, sign_challenge


def encode(data: bytes) -> str:
    return base64.b64encode(data).decode()


class TestAPI(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir, ignore_errors=True)
        self.blob_store = FlakyBlobStore(f"{self.tmpdir}/blobs")
        self.service = RecordShareService(self.blob_store, MemoryTableStore(), pending_dir=f"{self.tmpdir}/pending")
        self.sessions = SessionStore()
        self.client = TestClient(create_app(self.service, self.sessions))

        self.patient = self.register("patient-1", "patient", TEST_ACCOUNTS["Patient 1"])
        self.doctor = self.register("doctor-1", "doctor", TEST_ACCOUNTS["Doctor 1"])

    def signed(self, private_key, signer=None):
        address = address_of(private_key)
        challenge = self.client.post("/api/auth/challenge", json={"wallet_address": address}).json()["data"]["challenge"]
        return {
            "wallet_address": address,
            "signature": sign_challenge(challenge, signer or private_key),
            "challenge": challenge,
        }

    def register(self, profile_id, role, private_key):
        body = {"profile_id": profile_id, "role": role, **self.signed(private_key)}
        response = self.client.post("/api/profiles", json=body)
        self.assertEqual(response.status_code, 200, response.text)
        return {"Authorization": f"Bearer {self.login(address_of(private_key), private_key)}"}

    def login(self, address, private_key):
        challenge = self.client.post("/api/auth/challenge", json={"wallet_address": address}).json()["data"]["challenge"]
        response = self.client.post("/api/auth/verify", json={
            "wallet_address": address,
            "signature": sign_challenge(challenge, private_key),
            "challenge": challenge,
        })
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["data"]["token"]

    def upload(self, data=b"lab results", **extra):
        body = {"file_name": "labs.pdf", "mime_type": "application/pdf", "content_base64": encode(data)}
        body.update(extra)
        response = self.client.post("/api/records", json=body, headers=self.patient)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_1a_health(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["status"], "success")
        self.assertTrue(data["data"]["blob_store_available"])

    def test_1b_duplicateProfile(self):
        body = {"profile_id": "patient-1", "role": "patient", **self.signed(TEST_ACCOUNTS["Patient 2"])}
        response = self.client.post("/api/profiles", json=body)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"]["kind"], "Conflict")
        self.assertIsNone(self.service.identity.profile_for_wallet(address_of(TEST_ACCOUNTS["Patient 2"])))

    def test_1c_registrationNeedsOwnershipProof(self):
        body = {"profile_id": "doctor-2", "role": "doctor",
                **self.signed(TEST_ACCOUNTS["Doctor 2"], signer=TEST_ACCOUNTS["Patient 2"])}
        response = self.client.post("/api/profiles", json=body)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.client.get("/api/profiles/doctor-2", headers=self.patient).status_code, 404)

    def test_1d_registrationNeedsAWallet(self):
        response = self.client.post("/api/profiles", json={"profile_id": "doctor-2", "role": "doctor"})
        self.assertEqual(response.status_code, 422)

    def test_1e_walletCannotBeBoundToSomeoneElsesProfile(self):
        # A profile created without a wallet, e.g. by an administrator
        self.service.register_profile("doctor-2", "doctor")
        intruder_key = TEST_ACCOUNTS["Patient 2"]

        response = self.client.post("/api/profiles/doctor-2/wallet", json=self.signed(intruder_key))
        self.assertEqual(response.status_code, 401)

        intruder = self.register("patient-2", "patient", intruder_key)
        response = self.client.post("/api/profiles/doctor-2/wallet", headers=intruder, json=self.signed(intruder_key))
        self.assertEqual(response.status_code, 403)
        self.assertIsNone(self.service.identity.binding_for_profile("doctor-2"))

        address = address_of(intruder_key)
        challenge = self.client.post("/api/auth/challenge", json={"wallet_address": address}).json()["data"]["challenge"]
        response = self.client.post("/api/auth/verify", json={
            "wallet_address": address,
            "signature": sign_challenge(challenge, intruder_key),
            "challenge": challenge,
        })
        self.assertEqual(response.json()["data"]["profile_id"], "patient-2")

    def test_1f_rebindOwnWallet(self):
        response = self.client.post("/api/profiles/patient-1/wallet", headers=self.patient,
                                    json=self.signed(TEST_ACCOUNTS["Patient 1"]))
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["profile_id"], "patient-1")

    def test_2a_loginWithUnboundWallet(self):
        address = address_of(TEST_ACCOUNTS["Doctor 2"])
        challenge = self.client.post("/api/auth/challenge", json={"wallet_address": address}).json()["data"]["challenge"]
        response = self.client.post("/api/auth/verify", json={
            "wallet_address": address,
            "signature": sign_challenge(challenge, TEST_ACCOUNTS["Doctor 2"]),
            "challenge": challenge,
        })
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"]["kind"], "NoSuchBinding")

    def test_2b_authenticationRequired(self):
        self.assertEqual(self.client.get("/api/records").status_code, 401)
        self.assertEqual(self.client.get("/api/records", headers={"Authorization": "Bearer nope"}).status_code, 401)

    def test_2c_logout(self):
        response = self.client.post("/api/auth/logout", headers=self.patient)
        self.assertEqual(response.json()["message"], "Logged out successfully")
        self.assertEqual(self.client.get("/api/records", headers=self.patient).status_code, 401)

    def test_2d_sessionExpiry(self):
        self.sessions.expiration = -1
        self.assertEqual(self.client.get("/api/records", headers=self.patient).status_code, 401)

    def test_3a_uploadAndList(self):
        created = self.upload(tags=["lab"])
        self.assertEqual(created["message"], "Record stored")
        record = created["data"]
        self.assertEqual(record["owner_patient_id"], "patient-1")
        self.assertEqual(record["tags"], ["lab"])

        listed = self.client.get("/api/records", headers=self.patient).json()["data"]
        self.assertEqual([r["record_id"] for r in listed], [record["record_id"]])

    def test_3b_uploadValidation(self):
        response = self.client.post("/api/records", headers=self.patient, json={
            "file_name": "x.exe", "mime_type": "application/x-msdownload", "content_base64": encode(b"MZ"),
        })
        self.assertEqual(response.status_code, 400)
        response = self.client.post("/api/records", headers=self.patient, json={
            "file_name": "x.pdf", "mime_type": "application/pdf", "content_base64": "***",
        })
        self.assertEqual(response.status_code, 400)

    def test_3c_doctorsCannotUpload(self):
        response = self.client.post("/api/records", headers=self.doctor, json={
            "file_name": "x.pdf", "mime_type": "application/pdf", "content_base64": encode(b"x"),
        })
        self.assertEqual(response.status_code, 403)

    def test_3d_grantOpenRevoke(self):
        record = self.upload()["data"]
        record_id = record["record_id"]

        self.assertEqual(self.client.get(f"/api/records/{record_id}/open", headers=self.doctor).status_code, 403)
        self.assertEqual(self.client.get("/api/records?patient_id=patient-1", headers=self.doctor).json()["data"], [])

        expires_at = (datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1)).isoformat()
        response = self.client.post("/api/grants", headers=self.patient,
                                    json={"doctor_id": "doctor-1", "expires_at": expires_at})
        self.assertEqual(response.status_code, 200, response.text)
        grant = response.json()["data"]

        check = self.client.get(f"/api/grants/check?patient_id=patient-1&record_id={record_id}", headers=self.doctor)
        self.assertTrue(check.json()["data"]["authorized"])
        visible = self.client.get("/api/records?patient_id=patient-1", headers=self.doctor).json()["data"]
        self.assertEqual([r["record_id"] for r in visible], [record_id])

        opened = self.client.get(f"/api/records/{record_id}/open", headers=self.doctor)
        self.assertEqual(opened.status_code, 200, opened.text)
        download = self.client.get(opened.json()["data"]["url"])
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.content, b"lab results")

        self.assertEqual(self.client.post(f"/api/grants/{grant['grant_id']}/revoke", headers=self.doctor).status_code, 403)
        self.assertEqual(self.client.post(f"/api/grants/{grant['grant_id']}/revoke", headers=self.patient).status_code, 200)
        self.assertEqual(self.client.get(f"/api/records/{record_id}/open", headers=self.doctor).status_code, 403)

    def test_3e_tamperedDownloadLink(self):
        record_id = self.upload()["data"]["record_id"]
        url = self.client.get(f"/api/records/{record_id}/open", headers=self.patient).json()["data"]["url"]
        self.assertEqual(self.client.get(url.replace("signature=", "signature=00")).status_code, 403)

    def test_3f_naiveExpiryRejected(self):
        response = self.client.post("/api/grants", headers=self.patient,
                                    json={"doctor_id": "doctor-1", "expires_at": "2999-01-01T00:00:00"})
        self.assertEqual(response.status_code, 400)

    def test_3g_tagsAreOwnerOnly(self):
        record_id = self.upload()["data"]["record_id"]
        response = self.client.put(f"/api/records/{record_id}/tags", headers=self.doctor, json={"tags": ["x"]})
        self.assertEqual(response.status_code, 403)
        response = self.client.put(f"/api/records/{record_id}/tags", headers=self.patient, json={"tags": ["x"]})
        self.assertEqual(response.json()["data"]["tags"], ["x"])

    def test_4a_requestAndApprove(self):
        response = self.client.post("/api/requests", headers=self.doctor,
                                    json={"patient_id": "patient-1", "reason": "Second opinion"})
        self.assertEqual(response.status_code, 200, response.text)
        request_id = response.json()["data"]["request_id"]
        self.assertEqual(self.client.post("/api/requests", headers=self.doctor,
                                          json={"patient_id": "patient-1", "reason": "again"}).status_code, 409)

        pending = self.client.get("/api/requests", headers=self.patient).json()["data"]
        self.assertEqual([r["request_id"] for r in pending], [request_id])

        answered = self.client.post(f"/api/requests/{request_id}/respond", headers=self.patient, json={"approve": True})
        self.assertEqual(answered.json()["data"]["status"], "approved")
        grants = self.client.get("/api/grants", headers=self.doctor).json()["data"]
        self.assertEqual(grants[0]["request_id"], request_id)

    def test_4b_sharedFiles(self):
        response = self.client.post("/api/shared", headers=self.doctor, json={
            "patient_id": "patient-1", "file_name": "plan.txt", "mime_type": "text/plain",
            "content_base64": encode(b"treatment plan"),
        })
        self.assertEqual(response.status_code, 200, response.text)
        shared_id = response.json()["data"]["id"]

        inbox = self.client.get("/api/shared", headers=self.patient).json()["data"]
        self.assertEqual([f["id"] for f in inbox], [shared_id])
        self.assertEqual(self.client.post(f"/api/shared/{shared_id}/viewed", headers=self.doctor).status_code, 403)
        viewed = self.client.post(f"/api/shared/{shared_id}/viewed", headers=self.patient).json()["data"]
        self.assertTrue(viewed["is_viewed"])

        opened = self.client.get(f"/api/shared/{shared_id}/open", headers=self.patient).json()["data"]
        self.assertEqual(self.client.get(opened["url"]).content, b"treatment plan")

    def test_4c_degradedUploadAndReconcile(self):
        self.blob_store.available = False
        created = self.upload(data=b"offline scan")
        self.assertTrue(created["degraded"])
        self.assertTrue(created["data"]["degraded"])
        record_id = created["data"]["record_id"]
        self.assertEqual(self.client.get(f"/api/records/{record_id}/open", headers=self.patient).status_code, 503)

        self.blob_store.available = True
        report = self.client.post("/api/reconcile", headers=self.patient).json()["data"]
        self.assertEqual(report["records"], [record_id])
        self.assertEqual(self.client.get(f"/api/records/{record_id}/open", headers=self.patient).status_code, 200)

    def test_4d_auditTrail(self):
        record_id = self.upload()["data"]["record_id"]
        trail = self.client.get(f"/api/audit/{record_id}", headers=self.patient).json()["data"]
        self.assertEqual([e["action"] for e in trail], ["record_created"])
        self.assertEqual(self.client.get(f"/api/audit/{record_id}", headers=self.doctor).json()["data"], [])

    def test_4e_naiveShareExpiryRejected(self):
        response = self.client.post("/api/shared", headers=self.doctor, json={
            "patient_id": "patient-1", "file_name": "plan.txt", "mime_type": "text/plain",
            "content_base64": encode(b"treatment plan"), "expires_at": "2030-01-01T00:00:00",
        })
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["kind"], "ValidationError")
        self.assertEqual(self.blob_store.puts, 0)
