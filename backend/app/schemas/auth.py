from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

class NonceResponse(BaseModel):
    nonce: str
    expires_at: datetime

class ChallengeResponse(BaseModel):
    nonce: str
    message: str
    expires_at: datetime

class VerifyRequest(BaseModel):
    address: str = Field(min_length=1)
    message: str = Field(min_length=1)
    signature: str = Field(min_length=1)

class VerifyResponse(BaseModel):
    ok: bool = True
    address: str

class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    detail: Optional[str] = None
