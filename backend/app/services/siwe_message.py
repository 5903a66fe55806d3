"""
siwe_message.py
EIP-4361 challenge messages. Wallets display this text to the user, so the
layout below is part of the public contract:

    ${domain} wants you to sign in with your Ethereum account:
    ${address}

    ${statement}

    URI: ${uri}
    Version: 1
    Chain ID: ${chain_id}
    Nonce: ${nonce}
    Issued At: ${issued_at}
    Expiration Time: ${expiration_time}   (optional)
    Not Before: ${not_before}             (optional)
    Request ID: ${request_id}             (optional)
    Resources:                            (optional)
    - ${resource}

Formatting and the ABNF parse are done by the ``siwe`` package; this module
maps its model onto ChallengeMessage with real datetimes.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple
from siwe import SiweMessage

VERSION = "1"

NONCE_RE = re.compile(r"^[A-Za-z0-9]{8,}$")


class MessageParseError(ValueError):
    pass


@dataclass(frozen=True)
class ChallengeMessage:
    domain: str
    address: str
    chain_id: int
    nonce: str
    issued_at: datetime
    uri: Optional[str] = None
    statement: Optional[str] = None
    version: str = VERSION
    expiration_time: Optional[datetime] = None
    not_before: Optional[datetime] = None
    request_id: Optional[str] = None
    resources: Tuple[str, ...] = field(default_factory=tuple)


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value, label: str) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        dt = datetime.fromisoformat(str(value))
    except ValueError:
        raise MessageParseError(f"{label}: not an ISO-8601 timestamp: {value!r}")
    if dt.tzinfo is None:
        raise MessageParseError(f"{label}: timestamp has no timezone: {value!r}")
    return dt


def build_message(msg: ChallengeMessage) -> str:
    """Render ``msg`` as signable text. Raises ValueError on invalid fields."""
    if not NONCE_RE.match(msg.nonce):
        raise ValueError(f"Invalid nonce: {msg.nonce!r}")
    if msg.statement and "\n" in msg.statement:
        raise ValueError("Statement must be a single line")
    siwe = SiweMessage(
        domain=msg.domain,
        address=msg.address,
        statement=msg.statement or None,
        uri=msg.uri or f"https://{msg.domain}",
        version=msg.version,
        chain_id=msg.chain_id,
        nonce=msg.nonce,
        issued_at=format_timestamp(msg.issued_at),
        expiration_time=format_timestamp(msg.expiration_time) if msg.expiration_time else None,
        not_before=format_timestamp(msg.not_before) if msg.not_before else None,
        request_id=msg.request_id or None,
        resources=list(msg.resources) or None,
    )
    return siwe.prepare_message()


def parse_message(text: str) -> ChallengeMessage:
    if not isinstance(text, str) or not text:
        raise MessageParseError("Empty message")
    # Wallets on Windows sign CRLF text; a single trailing newline is tolerated.
    text = text.replace("\r\n", "\n")
    if text.endswith("\n"):
        text = text[:-1]
    try:
        siwe = SiweMessage.from_message(message=text)
    except ValueError as e:
        raise MessageParseError(f"Not an EIP-4361 message: {e}") from e

    return ChallengeMessage(
        domain=siwe.domain,
        address=str(siwe.address),
        uri=str(siwe.uri),
        chain_id=int(siwe.chain_id),
        nonce=siwe.nonce,
        issued_at=parse_timestamp(siwe.issued_at, "Issued At"),
        statement=siwe.statement or None,
        expiration_time=parse_timestamp(siwe.expiration_time, "Expiration Time") if siwe.expiration_time else None,
        not_before=parse_timestamp(siwe.not_before, "Not Before") if siwe.not_before else None,
        request_id=siwe.request_id,
        resources=tuple(str(r) for r in siwe.resources or ()),
    )


def parse_nonce(text: str) -> str:
    return parse_message(text).nonce


def parse_address(text: str) -> str:
    return parse_message(text).address


def parse_chain_id(text: str) -> int:
    return parse_message(text).chain_id
