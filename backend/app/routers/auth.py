from typing import Optional
from fastapi import APIRouter, Depends, Query
from app.core.deps import get_auth_protocol
from app.schemas.auth import ChallengeResponse, ErrorResponse, NonceResponse, VerifyRequest, VerifyResponse
from app.services.auth_protocol import AuthProtocol, VerificationRequest

router = APIRouter(prefix="/auth", tags=["auth"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}

@router.get("/nonce", response_model=NonceResponse)
async def get_nonce(protocol: AuthProtocol = Depends(get_auth_protocol)):
    nonce = await protocol.issue_nonce()
    return NonceResponse(nonce=nonce.value, expires_at=nonce.expires_at)

@router.get("/challenge", response_model=ChallengeResponse, responses=ERROR_RESPONSES)
async def get_challenge(
    address: str = Query(..., min_length=40, max_length=42),
    chain_id: Optional[int] = Query(None),
    protocol: AuthProtocol = Depends(get_auth_protocol),
):
    nonce, message = await protocol.create_challenge(address, chain_id)
    return ChallengeResponse(nonce=nonce.value, message=message, expires_at=nonce.expires_at)

@router.post("/verify", response_model=VerifyResponse, responses=ERROR_RESPONSES)
async def verify_signature(body: VerifyRequest, protocol: AuthProtocol = Depends(get_auth_protocol)):
    result = await protocol.verify(VerificationRequest(
        address=body.address,
        message=body.message,
        signature=body.signature,
    ))
    if not result.valid:
        raise result.error
    return VerifyResponse(address=result.address)
