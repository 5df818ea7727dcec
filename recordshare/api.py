import time
import base64
import secrets
import logging
import binascii
import datetime
import threading
from typing import Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, Header, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from recordshare.constants import ALL_RECORDS, ROLES, SESSION_EXPIRATION, SIGNED_URL_TTL
from recordshare.errors import ErrorKind, RecordShareError
from recordshare.service import RecordShareService
from recordshare.stores import LOCAL_PREFIX, LocalBlobStore, verify_locator_signature

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STORE_UNAVAILABLE: 503,
    ErrorKind.INVALID_SIGNATURE: 401,
    ErrorKind.NO_SUCH_BINDING: 401,
    ErrorKind.VALIDATION_ERROR: 400,
}


# Request bodies
class ChallengeRequest(BaseModel):
    wallet_address: str


class SignedChallenge(BaseModel):
    wallet_address: str
    signature: str
    challenge: str


class ProfileRequest(SignedChallenge):
    profile_id: str
    role: str
    display_name: str = ""


class UploadRequest(BaseModel):
    file_name: str
    mime_type: str
    content_base64: str
    tags: List[str] = []
    description: str = ""


class TagsRequest(BaseModel):
    tags: List[str]


class DescriptionRequest(BaseModel):
    description: str


class GrantRequest(BaseModel):
    doctor_id: str
    scope: str = ALL_RECORDS
    expires_at: Optional[datetime.datetime] = None


class AccessRequestBody(BaseModel):
    patient_id: str
    reason: str
    scope: str = ALL_RECORDS


class RespondRequest(BaseModel):
    approve: bool
    expires_at: Optional[datetime.datetime] = None


class ShareRequest(BaseModel):
    patient_id: str
    file_name: str
    mime_type: str
    content_base64: str
    description: str = ""
    expires_at: Optional[datetime.datetime] = None


# Standard API response helpers
def success_response(data=None, message=None, degraded=False):
    """
    Create a standardized success response.

    Args:
        data: Optional data to include in the response
        message: Optional message to include in the response
        degraded: Whether the blob store was unavailable while serving the call

    Returns:
        dict: A standardized success response
    """
    response = {"status": "success"}

    if data is not None:
        response["data"] = data

    if message is not None:
        response["message"] = message

    if degraded:
        response["degraded"] = True

    return response


def error_response(message, status_code=400, kind=None):
    """
    Create a standardized error response and raise an HTTPException.

    Raises:
        HTTPException: With the specified status code and error details
    """
    detail = {"status": "error", "error": message}
    if kind is not None:
        detail["kind"] = kind.value
    raise HTTPException(status_code=status_code, detail=detail)


def to_json(value):
    """Dump models, and containers of models, to JSON-compatible values"""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    return value


def unwrap(result, message=None):
    """Turn a service Result into a success response or an HTTP error"""
    if result.error is not None:
        error_response(result.message, ERROR_STATUS.get(result.error, 500), result.error)
    return success_response(data=to_json(result.data), message=message, degraded=result.degraded)


def decode_upload(content_base64: str) -> bytes:
    try:
        return base64.b64decode(content_base64, validate=True)
    except (binascii.Error, ValueError):
        error_response("content_base64 is not valid base64", 400, ErrorKind.VALIDATION_ERROR)


class SessionStore:
    """
    Bearer tokens issued after a successful wallet login.

    Format: {token: (profile_id, issued_at)}
    """

    def __init__(self, expiration: int = SESSION_EXPIRATION, clock=time.time):
        self.expiration = expiration
        self.clock = clock
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def create(self, profile_id: str) -> str:
        token = secrets.token_hex(32)
        with self._lock:
            self._sessions[token] = (profile_id, self.clock())
        return token

    def get(self, token: str) -> Optional[str]:
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            profile_id, issued_at = session
            if self.clock() - issued_at > self.expiration:
                logger.info(f"Session for {profile_id} has expired")
                del self._sessions[token]
                return None
            return profile_id

    def revoke(self, token: str) -> bool:
        with self._lock:
            return self._sessions.pop(token, None) is not None


def create_app(service: Optional[RecordShareService] = None,
               sessions: Optional[SessionStore] = None) -> FastAPI:
    service = service or RecordShareService.from_config()
    sessions = sessions or SessionStore()

    app = FastAPI(title="Record Sharing API")
    app.state.service = service
    app.state.sessions = sessions

    # Enable CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def bearer_token(authorization: Optional[str] = Header(None)) -> str:
        if not authorization or not authorization.startswith("Bearer "):
            error_response("Authentication required", 401)
        return authorization[len("Bearer "):]

    def current_profile(token: str = Depends(bearer_token)) -> str:
        profile_id = sessions.get(token)
        if profile_id is None:
            error_response("Session is invalid or has expired", 401)
        return profile_id

    def role_of(profile_id: str) -> str:
        return unwrap(service.get_profile(profile_id))["data"]["role"]

    def require_role(profile_id: str, role: str) -> None:
        if role_of(profile_id) != role:
            error_response(f"Only a {role} may perform this action", 403, ErrorKind.FORBIDDEN)

    # Health check endpoint
    @app.get("/api/health")
    def health_check():
        """Health check endpoint for Docker healthcheck"""
        blob_store = service.content_store.blob_store
        return success_response(
            data={
                "timestamp": int(time.time()),
                "blob_store": type(blob_store).__name__,
                "blob_store_available": blob_store.is_available(),
            },
            message="Service is healthy"
        )

    # Authentication
    @app.post("/api/auth/challenge")
    def get_auth_challenge(body: ChallengeRequest):
        """Generate an authentication challenge for a wallet address."""
        result = unwrap(service.issue_challenge(body.wallet_address))
        return success_response(data={"challenge": result["data"], "wallet_address": body.wallet_address.lower()})

    @app.post("/api/auth/verify")
    def verify_auth(body: SignedChallenge):
        """Verify a signed challenge and open a session for the bound profile."""
        profile_id = unwrap(service.authenticate_by_wallet(body.wallet_address, body.signature, body.challenge))["data"]
        token = sessions.create(profile_id)
        logger.info(f"Opened session for {profile_id}")
        return success_response(
            data={
                "authenticated": True,
                "profile_id": profile_id,
                "role": role_of(profile_id),
                "token": token,
                "expires_in": sessions.expiration,
            }
        )

    @app.post("/api/auth/logout")
    def logout_user(token: str = Depends(bearer_token)):
        if sessions.revoke(token):
            return success_response(message="Logged out successfully")
        return success_response(message="Not logged in")

    # Profiles
    @app.post("/api/profiles")
    def register_profile(body: ProfileRequest):
        """Register a profile together with the wallet that signed the challenge."""
        return unwrap(service.register_with_wallet(body.profile_id, body.role, body.display_name,
                                                   body.wallet_address, body.signature, body.challenge),
                      message="Profile registered")

    @app.get("/api/profiles/{profile_id}")
    def get_profile(profile_id: str, caller: str = Depends(current_profile)):
        return unwrap(service.get_profile(profile_id))

    @app.post("/api/profiles/{profile_id}/wallet")
    def bind_wallet(profile_id: str, body: SignedChallenge, caller: str = Depends(current_profile)):
        """Bind a wallet to the caller's own profile after the wallet signs a challenge."""
        if caller != profile_id:
            error_response("Wallets can only be bound to your own profile", 403, ErrorKind.FORBIDDEN)
        address = unwrap(service.verify_wallet_ownership(body.wallet_address, body.signature, body.challenge))["data"]
        return unwrap(service.bind_wallet(profile_id, address), message="Wallet bound")

    # Records
    @app.post("/api/records")
    def upload_record(body: UploadRequest, caller: str = Depends(current_profile)):
        require_role(caller, ROLES["PATIENT"])
        data = decode_upload(body.content_base64)
        result = service.upload_record(caller, data, body.mime_type, body.file_name, body.tags, body.description)
        message = "Record stored" if not result.degraded else "Record stored locally, upload pending"
        return unwrap(result, message=message)

    @app.get("/api/records")
    def list_records(patient_id: Optional[str] = None, caller: str = Depends(current_profile)):
        """List the caller's records, or as a doctor the records of a patient the caller may read."""
        if role_of(caller) == ROLES["DOCTOR"]:
            if not patient_id:
                error_response("patient_id is required", 400, ErrorKind.VALIDATION_ERROR)
            return unwrap(service.accessible_records(caller, patient_id))
        if patient_id and patient_id != caller:
            error_response("Patients can only list their own records", 403, ErrorKind.FORBIDDEN)
        return unwrap(service.list_records(caller))

    @app.put("/api/records/{record_id}/tags")
    def update_tags(record_id: str, body: TagsRequest, caller: str = Depends(current_profile)):
        return unwrap(service.update_tags(record_id, caller, body.tags))

    @app.put("/api/records/{record_id}/description")
    def update_description(record_id: str, body: DescriptionRequest, caller: str = Depends(current_profile)):
        return unwrap(service.update_description(record_id, caller, body.description))

    @app.get("/api/records/{record_id}/open")
    def open_record(record_id: str, caller: str = Depends(current_profile)):
        return unwrap(service.open_record(record_id, caller, SIGNED_URL_TTL))

    # Grants
    @app.post("/api/grants")
    def create_grant(body: GrantRequest, caller: str = Depends(current_profile)):
        require_role(caller, ROLES["PATIENT"])
        return unwrap(service.create_grant(caller, body.doctor_id, body.scope, body.expires_at),
                      message="Access granted")

    @app.get("/api/grants")
    def list_grants(include_inactive: bool = False, caller: str = Depends(current_profile)):
        if role_of(caller) == ROLES["DOCTOR"]:
            return unwrap(service.list_grants_for_doctor(caller))
        return unwrap(service.list_grants_for_patient(caller, include_inactive))

    @app.post("/api/grants/{grant_id}/revoke")
    def revoke_grant(grant_id: str, caller: str = Depends(current_profile)):
        return unwrap(service.revoke_grant(grant_id, caller), message="Access revoked")

    @app.get("/api/grants/check")
    def check_grant(patient_id: str, record_id: str, caller: str = Depends(current_profile)):
        authorized = unwrap(service.is_authorized(caller, patient_id, record_id))["data"]
        return success_response(data={"authorized": authorized})

    # Access requests
    @app.post("/api/requests")
    def request_access(body: AccessRequestBody, caller: str = Depends(current_profile)):
        require_role(caller, ROLES["DOCTOR"])
        return unwrap(service.request_access(caller, body.patient_id, body.reason, body.scope),
                      message="Access request sent")

    @app.get("/api/requests")
    def list_requests(caller: str = Depends(current_profile)):
        if role_of(caller) == ROLES["DOCTOR"]:
            return unwrap(service.list_requests_for_doctor(caller))
        return unwrap(service.list_requests_for_patient(caller))

    @app.post("/api/requests/{request_id}/respond")
    def respond_to_request(request_id: str, body: RespondRequest, caller: str = Depends(current_profile)):
        return unwrap(service.respond_to_request(request_id, caller, body.approve, body.expires_at))

    # Shared files
    @app.post("/api/shared")
    def share_file(body: ShareRequest, caller: str = Depends(current_profile)):
        data = decode_upload(body.content_base64)
        return unwrap(service.share_upload(caller, body.patient_id, data, body.mime_type, body.file_name,
                                           body.description, body.expires_at),
                      message="File shared")

    @app.get("/api/shared")
    def list_shared(caller: str = Depends(current_profile)):
        if role_of(caller) == ROLES["DOCTOR"]:
            return unwrap(service.list_shared_for_doctor(caller))
        return unwrap(service.list_shared_for_patient(caller))

    @app.post("/api/shared/{shared_file_id}/viewed")
    def mark_viewed(shared_file_id: str, caller: str = Depends(current_profile)):
        return unwrap(service.mark_viewed(shared_file_id, caller))

    @app.get("/api/shared/{shared_file_id}/open")
    def open_shared_file(shared_file_id: str, caller: str = Depends(current_profile)):
        return unwrap(service.open_shared_file(shared_file_id, caller, SIGNED_URL_TTL))

    # Signed downloads for the local blob store
    @app.get("/api/blobs/{name}")
    def download_blob(name: str, expires: int, signature: str):
        blob_store = service.content_store.blob_store
        if not isinstance(blob_store, LocalBlobStore):
            error_response("Blobs are served by the IPFS gateway", 404, ErrorKind.NOT_FOUND)
        locator = f"{LOCAL_PREFIX}{name}"
        if not verify_locator_signature(locator, expires, signature, blob_store.secret):
            error_response("Link is invalid or has expired", 403, ErrorKind.FORBIDDEN)
        try:
            data = blob_store.get(locator)
        except RecordShareError as e:
            logger.error(f"Error reading blob {name}: {e.message}")
            error_response(e.message, ERROR_STATUS[e.kind], e.kind)
        return Response(content=data, media_type="application/octet-stream")

    # Maintenance
    @app.get("/api/audit/{subject_id}")
    def audit_trail(subject_id: str, caller: str = Depends(current_profile)):
        """Return audit events for a subject that involve the caller."""
        events = unwrap(service.audit_trail(subject_id))["data"]
        visible = [e for e in events
                   if caller in (e["actor_id"], e["subject_id"]) or caller in e["details"].values()]
        return success_response(data=visible)

    @app.post("/api/reconcile")
    def reconcile(caller: str = Depends(current_profile)):
        report = unwrap(service.reconcile())["data"]
        return success_response(data=report, message=f"Healed {len(report['healed'])}, {len(report['pending'])} pending")

    return app


app = create_app()
