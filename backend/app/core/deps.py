from typing import Optional
from app.services.auth_protocol import AuthProtocol
from app.services.nonce_store import get_nonce_store
from app.services.signature_verifier import SignatureVerifier

_protocol: Optional[AuthProtocol] = None

async def get_auth_protocol() -> AuthProtocol:
    global _protocol
    if _protocol is None:
        _protocol = AuthProtocol(await get_nonce_store(), SignatureVerifier())
    return _protocol
