"""
Identity binding for the record sharing platform.

This module keeps the profile directory, binds wallet addresses to profiles
and authenticates callers by a signed challenge instead of a password.
Every challenge embeds a server-issued nonce and its issue time. A wallet has
one outstanding challenge, usable once; challenges older than
CHALLENGE_MAX_AGE are rejected.
"""

import re
import os
import hashlib
import logging
import threading
import datetime
from typing import List, Optional

from web3 import Web3
from eth_account import Account
from eth_account.messages import encode_defunct

from recordshare.constants import CHALLENGE_CLOCK_SKEW, CHALLENGE_MAX_AGE, ROLES
from recordshare.errors import (
    Conflict, InvalidSignature, NoSuchBinding, NotFound, ValidationError,
)
from recordshare.models import IdentityBinding, Profile

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
WALLETS_TABLE = "wallets"
CHALLENGES_TABLE = "challenges"
WALLET_INDEX = "wallet_address"

CHALLENGE_PREFIX = "Sign this message to authenticate with the Record Sharing platform."
_CHALLENGE_RE = re.compile(
    r"^" + re.escape(CHALLENGE_PREFIX) + r"\n"
    r"Wallet: (?P<wallet>0x[0-9a-f]{40})\n"
    r"Nonce: (?P<nonce>[0-9a-f]{64})\n"
    r"Issued At: (?P<issued_at>\S+)$"
)


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def normalize_address(wallet_address: str) -> str:
    """
    Lowercase a wallet address after checking its format

    Raises:
        ValidationError: If the value is not a 20-byte hex address
    """
    if not isinstance(wallet_address, str) or not Web3.is_address(wallet_address):
        raise ValidationError(f"Invalid wallet address: {wallet_address}")
    return wallet_address.lower()


class EthSignatureVerifier:
    """Verifies EIP-191 personal_sign signatures by recovering the signer"""

    def verify(self, address: str, message: str, signature: str) -> bool:
        try:
            recovered_address = Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as e:
            logger.error(f"Error verifying signature: {str(e)}")
            return False
        return recovered_address.lower() == address.lower()


class IdentityRegistry:
    def __init__(self, table_store, verifier=None, audit=None, clock=None,
                 max_age: int = CHALLENGE_MAX_AGE, clock_skew: int = CHALLENGE_CLOCK_SKEW):
        self.table_store = table_store
        self.verifier = verifier or EthSignatureVerifier()
        self.audit = audit
        self.clock = clock or _utcnow
        self.max_age = max_age
        self.clock_skew = clock_skew
        self._nonce_lock = threading.Lock()
        self._bind_lock = threading.Lock()

    # Profiles

    def register_profile(self, profile_id: str, role: str, display_name: str = "",
                         wallet_address: Optional[str] = None) -> Profile:
        """
        Create a profile, optionally bound to a wallet in the same step

        The wallet address must already be proven to belong to the caller.

        Raises:
            ValidationError: If the id, role or address is invalid
            Conflict: If the profile exists or the wallet is bound elsewhere
        """
        if not profile_id or not profile_id.strip():
            raise ValidationError("profile_id is required")
        if role not in ROLES.values():
            raise ValidationError(f"Invalid role: {role}")
        address = normalize_address(wallet_address) if wallet_address is not None else None
        profile = Profile(profile_id=profile_id, role=role, display_name=display_name, created_at=self.clock())

        with self._bind_lock:
            if address is not None and self.table_store.lookup_unique(WALLET_INDEX, address) is not None:
                raise Conflict(f"Wallet {address} is already bound to another profile")
            try:
                self.table_store.insert(PROFILES_TABLE, profile_id, profile.model_dump(mode="json"))
            except Conflict:
                raise Conflict(f"Profile {profile_id} already exists")
            if address is not None:
                self.table_store.claim_unique(WALLET_INDEX, address, profile_id)
                binding = IdentityBinding(profile_id=profile_id, wallet_address=address)
                self.table_store.upsert(WALLETS_TABLE, profile_id, binding.model_dump(mode="json"))

        logger.info(f"Registered {role} profile {profile_id}")
        if address is not None:
            logger.info(f"Bound wallet {address} to {profile_id}")
            if self.audit:
                self.audit.append("wallet_bound", profile_id, profile_id, {"wallet_address": address})
        return profile

    def get_profile(self, profile_id: str) -> Profile:
        row = self.table_store.get(PROFILES_TABLE, profile_id)
        if row is None:
            raise NotFound(f"Profile {profile_id} not found")
        return Profile.model_validate(row)

    def list_profiles(self, role: Optional[str] = None) -> List[Profile]:
        rows = self.table_store.scan(PROFILES_TABLE, lambda r: role is None or r["role"] == role)
        return sorted((Profile.model_validate(r) for r in rows), key=lambda p: p.profile_id)

    # Wallet bindings

    def bind_wallet(self, profile_id: str, wallet_address: str) -> IdentityBinding:
        """
        Bind a wallet address to a profile

        Raises:
            ValidationError: If the address is malformed
            NotFound: If the profile does not exist
            Conflict: If the address is bound to another profile, or the
                profile already has a different wallet
        """
        address = normalize_address(wallet_address)
        self.get_profile(profile_id)

        binding = IdentityBinding(profile_id=profile_id, wallet_address=address)
        with self._bind_lock:
            current = self.table_store.get(WALLETS_TABLE, profile_id)
            if current is not None and current["wallet_address"] != address:
                raise Conflict(f"Profile {profile_id} is already bound to another wallet")
            if not self.table_store.claim_unique(WALLET_INDEX, address, profile_id):
                raise Conflict(f"Wallet {address} is already bound to another profile")
            if current is None:
                self.table_store.upsert(WALLETS_TABLE, profile_id, binding.model_dump(mode="json"))
        if current is None:
            logger.info(f"Bound wallet {address} to {profile_id}")
            if self.audit:
                self.audit.append("wallet_bound", profile_id, profile_id, {"wallet_address": address})
        return binding

    def profile_for_wallet(self, wallet_address: str) -> Optional[str]:
        return self.table_store.lookup_unique(WALLET_INDEX, wallet_address.lower())

    def binding_for_profile(self, profile_id: str) -> Optional[IdentityBinding]:
        row = self.table_store.get(WALLETS_TABLE, profile_id)
        return IdentityBinding.model_validate(row) if row else None

    # Challenges

    def _purge_stale_challenges(self, now: datetime.datetime) -> None:
        for row in self.table_store.scan(CHALLENGES_TABLE):
            issued_at = datetime.datetime.fromisoformat(row["issued_at"])
            if (now - issued_at).total_seconds() > self.max_age:
                self.table_store.delete(CHALLENGES_TABLE, row["wallet_address"])

    def issue_challenge(self, wallet_address: str) -> str:
        """
        Generate an authentication challenge for a wallet address

        A wallet has at most one outstanding challenge; issuing a new one
        replaces it, and challenges older than max_age are dropped.

        Returns:
            str: The message the wallet must sign
        """
        address = normalize_address(wallet_address)
        nonce = hashlib.sha256(os.urandom(32)).hexdigest()
        issued_at = self.clock().replace(microsecond=0)
        with self._nonce_lock:
            self._purge_stale_challenges(issued_at)
            self.table_store.upsert(CHALLENGES_TABLE, address, {
                "wallet_address": address,
                "nonce": nonce,
                "issued_at": issued_at.isoformat(),
            })
        return f"{CHALLENGE_PREFIX}\nWallet: {address}\nNonce: {nonce}\nIssued At: {issued_at.isoformat()}"

    def verify_challenge(self, wallet_address: str, signature: str, challenge_message: str) -> str:
        """
        Check freshness and signature of a challenge and consume its nonce

        Returns:
            str: The normalized wallet address

        Raises:
            InvalidSignature: If the challenge is malformed, stale, reused or
                the signature does not match
        """
        try:
            address = normalize_address(wallet_address)
        except ValidationError as e:
            raise InvalidSignature(str(e))
        match = _CHALLENGE_RE.match(challenge_message or "")
        if not match or match.group("wallet") != address:
            raise InvalidSignature("Challenge message is malformed or for another wallet")

        try:
            issued_at = datetime.datetime.fromisoformat(match.group("issued_at"))
        except ValueError:
            raise InvalidSignature("Challenge timestamp is malformed")
        if issued_at.tzinfo is None:
            raise InvalidSignature("Challenge timestamp has no timezone")
        now = self.clock()
        age = (now - issued_at).total_seconds()
        if age > self.max_age or age < -self.clock_skew:
            logger.error(f"Authentication challenge for {address} has expired")
            raise InvalidSignature("Challenge has expired")

        nonce = match.group("nonce")
        with self._nonce_lock:
            row = self.table_store.get(CHALLENGES_TABLE, address)
            if row is None or row["nonce"] != nonce:
                raise InvalidSignature("Challenge was not issued, was replaced or was already used")
            self.table_store.delete(CHALLENGES_TABLE, address)

        if not self.verifier.verify(address, challenge_message, signature):
            logger.error(f"Signature verification failed for {address}")
            raise InvalidSignature("Signature does not match wallet address")
        return address

    def authenticate_by_wallet(self, wallet_address: str, signature: str, challenge_message: str) -> str:
        """
        Authenticate a caller by a signed challenge

        Returns:
            str: The profile id bound to the wallet

        Raises:
            NoSuchBinding: If no profile is bound to the wallet
            InvalidSignature: If the challenge or signature is rejected
        """
        address = (wallet_address or "").lower()
        profile_id = self.table_store.lookup_unique(WALLET_INDEX, address)
        if profile_id is None:
            raise NoSuchBinding(f"No profile is bound to {address}")
        self.verify_challenge(address, signature, challenge_message)
        logger.info(f"Authentication successful for {address} as {profile_id}")
        return profile_id
