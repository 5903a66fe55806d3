"""
auth_protocol.py
Two-phase sign-in: a nonce (or full challenge) is handed out, then a signed
message is checked in this order:

  parse message -> cross-check claimed fields -> consume nonce -> time bounds
  -> signature

Once the nonce is consumed the attempt is spent whatever happens next, so a
client must fetch a new nonce after any failure.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple
from app.config import settings
from app.core.errors import (
    AuthError,
    InternalError,
    InvalidNonce,
    InvalidSignature,
    MalformedMessage,
    MissingParameters,
)
from app.services.nonce_store import ConsumeResult, Nonce, NonceStore, NonceStoreError, utcnow
from app.services.siwe_message import ChallengeMessage, MessageParseError, build_message, parse_message
from app.services.signature_verifier import (
    InvalidAddress,
    InvalidSignatureFormat,
    SignatureVerifier,
    normalize_address,
)

logger = logging.getLogger(__name__)


class AttemptState(str, enum.Enum):
    ISSUED = "issued"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    REJECTED = "rejected"


TERMINAL_STATES = {AttemptState.VERIFIED, AttemptState.REJECTED}

_TRANSITIONS = {
    AttemptState.ISSUED: {AttemptState.VERIFYING, AttemptState.REJECTED},
    AttemptState.VERIFYING: {AttemptState.VERIFIED, AttemptState.REJECTED},
}


@dataclass
class AuthAttempt:
    state: AttemptState = AttemptState.ISSUED
    history: List[AttemptState] = field(default_factory=lambda: [AttemptState.ISSUED])

    def advance(self, new_state: AttemptState):
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal attempt transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


@dataclass(frozen=True)
class VerificationRequest:
    address: str
    message: str
    signature: str


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    address: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[AuthError] = None

    @classmethod
    def failure(cls, error: AuthError, address: str = None) -> "VerificationResult":
        return cls(valid=False, address=address, reason=error.code, error=error)


class AuthProtocol:
    def __init__(
        self,
        nonce_store: NonceStore,
        verifier: SignatureVerifier,
        allowed_domains: Iterable[str] = None,
        allowed_chain_ids: Iterable[int] = None,
        clock: Callable = utcnow,
    ):
        self.nonce_store = nonce_store
        self.verifier = verifier
        self.allowed_domains = set(allowed_domains if allowed_domains is not None else settings.SIWE_ALLOWED_DOMAINS)
        self.allowed_chain_ids = set(
            allowed_chain_ids if allowed_chain_ids is not None else settings.CHAIN_RPC_URLS.keys()
        )
        self.clock = clock

    async def issue_nonce(self) -> Nonce:
        try:
            return await self.nonce_store.issue()
        except NonceStoreError as e:
            logger.error("Nonce issuance failed: %s", e)
            raise InternalError("Could not issue nonce")

    async def create_challenge(
        self, address: str, chain_id: int = None, statement: Optional[str] = None
    ) -> Tuple[Nonce, str]:
        """Issue a nonce and the EIP-4361 message the wallet should sign."""
        chain_id = chain_id if chain_id is not None else settings.DEFAULT_CHAIN_ID
        if chain_id not in self.allowed_chain_ids:
            raise MalformedMessage(f"Unsupported chain id {chain_id}")
        try:
            checksummed = normalize_address(address)
        except InvalidAddress as e:
            raise MissingParameters(str(e))

        nonce = await self.issue_nonce()
        message = build_message(ChallengeMessage(
            domain=settings.SIWE_DOMAIN,
            address=checksummed,
            uri=settings.SIWE_URI,
            chain_id=chain_id,
            nonce=nonce.value,
            issued_at=nonce.issued_at,
            statement=statement if statement is not None else settings.SIWE_STATEMENT,
            expiration_time=nonce.expires_at,
        ))
        return nonce, message

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        attempt = AuthAttempt()
        try:
            address = await self._run(request, attempt)
        except AuthError as e:
            attempt.advance(AttemptState.REJECTED)
            logger.info("Sign-in rejected (%s): %s", e.code, e.detail)
            return VerificationResult.failure(e, address=request.address)
        except Exception:
            attempt.advance(AttemptState.REJECTED)
            logger.exception("Unexpected error while verifying sign-in")
            return VerificationResult.failure(InternalError(), address=request.address)

        attempt.advance(AttemptState.VERIFIED)
        logger.info("Sign-in verified for %s", address)
        return VerificationResult(valid=True, address=address)

    async def _run(self, request: VerificationRequest, attempt: AuthAttempt) -> str:
        missing = [name for name in ("address", "message", "signature") if not getattr(request, name)]
        if missing:
            raise MissingParameters(f"Missing parameters: {', '.join(missing)}")

        try:
            claimed = normalize_address(request.address)
        except InvalidAddress as e:
            raise MissingParameters(str(e))

        try:
            message = parse_message(request.message)
        except MessageParseError as e:
            raise MalformedMessage(str(e))
        self._check_claims(message, claimed)

        try:
            outcome = await self.nonce_store.consume(message.nonce)
        except NonceStoreError as e:
            logger.error("Nonce store failure: %s", e)
            raise InternalError("Nonce store unavailable")
        if outcome != ConsumeResult.OK:
            logger.info("Nonce rejected for %s: %s", claimed, outcome.value)
            raise InvalidNonce()

        attempt.advance(AttemptState.VERIFYING)
        now = self.clock()
        if message.expiration_time and now >= message.expiration_time:
            raise InvalidNonce("Sign-in message has expired")
        if message.not_before and now < message.not_before:
            raise InvalidNonce("Sign-in message is not yet valid")

        try:
            valid = await self.verifier.verify(claimed, request.message, request.signature, message.chain_id)
        except InvalidSignatureFormat as e:
            raise InvalidSignature(str(e))
        if not valid:
            raise InvalidSignature()
        return claimed

    def _check_claims(self, message: ChallengeMessage, claimed: str):
        if message.address.lower() != claimed.lower():
            raise MalformedMessage("Message address does not match the claimed address")
        if self.allowed_domains and message.domain not in self.allowed_domains:
            raise MalformedMessage(f"Message domain {message.domain!r} is not accepted")
        if message.chain_id not in self.allowed_chain_ids:
            raise MalformedMessage(f"Unsupported chain id {message.chain_id}")
