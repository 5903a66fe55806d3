"""
signature_verifier.py
Checks that a wallet signed a sign-in message.

Externally owned accounts are checked locally with EIP-191 ECDSA recovery.
Anything that does not recover to the claimed address falls back to the
chain: ERC-1271 isValidSignature on a deployed wallet, or for an ERC-6492
wrapped signature of a not-yet-deployed wallet, a deployless eth_call of the
universal signature validator, which deploys the wallet and checks it in one call.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional
from eth_abi import decode as abi_decode, encode as abi_encode
from eth_account import Account
from eth_account.messages import defunct_hash_message, encode_defunct
from eth_utils import is_hex_address, to_checksum_address
from app.config import settings
from app.core.errors import VerificationUnavailable
from app.services.chain_rpc import ChainRpcClient, RpcError, RpcReverted, rpc_client_for_chain
from app.services.universal_validator import UNIVERSAL_VALIDATOR_BYTECODE

logger = logging.getLogger(__name__)

ERC1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
IS_VALID_SIGNATURE_SELECTOR = ERC1271_MAGIC_VALUE  # isValidSignature(bytes32,bytes)
ERC6492_MAGIC_SUFFIX = bytes.fromhex("64926492" * 8)
ECDSA_LENGTHS = (64, 65)


class InvalidSignatureFormat(ValueError):
    pass


class InvalidAddress(ValueError):
    pass


class SignatureScheme(str, enum.Enum):
    ECDSA = "ecdsa"
    ERC1271 = "erc1271"
    ERC6492 = "erc6492"


@dataclass(frozen=True)
class Erc6492Signature:
    factory: str
    factory_calldata: bytes
    signature: bytes


def normalize_address(address: str) -> str:
    if not isinstance(address, str):
        raise InvalidAddress("Address must be a string")
    value = address.strip()
    if value[:2].lower() != "0x":
        value = "0x" + value
    value = "0x" + value[2:].lower()
    if not is_hex_address(value):
        raise InvalidAddress(f"Invalid address: {address!r}")
    return to_checksum_address(value)


def normalize_signature(signature: str) -> bytes:
    if not isinstance(signature, str):
        raise InvalidSignatureFormat("Signature must be a hex string")
    value = signature.strip()
    if value[:2].lower() == "0x":
        value = value[2:]
    try:
        sig = bytes.fromhex(value)
    except ValueError as e:
        raise InvalidSignatureFormat(f"Signature is not valid hex: {e}") from e
    if not sig:
        raise InvalidSignatureFormat("Empty signature")
    return sig


def classify_signature(sig: bytes) -> SignatureScheme:
    if len(sig) > len(ERC6492_MAGIC_SUFFIX) and sig.endswith(ERC6492_MAGIC_SUFFIX):
        return SignatureScheme.ERC6492
    if len(sig) in ECDSA_LENGTHS:
        return SignatureScheme.ECDSA
    return SignatureScheme.ERC1271


def unwrap_erc6492(sig: bytes) -> Erc6492Signature:
    try:
        factory, calldata, inner = abi_decode(["address", "bytes", "bytes"], sig[: -len(ERC6492_MAGIC_SUFFIX)])
    except Exception as e:
        raise InvalidSignatureFormat(f"Malformed ERC-6492 signature: {e}") from e
    return Erc6492Signature(factory=to_checksum_address(factory), factory_calldata=calldata, signature=inner)


def is_valid_signature_calldata(message_hash: bytes, sig: bytes) -> bytes:
    return IS_VALID_SIGNATURE_SELECTOR + abi_encode(["bytes32", "bytes"], [message_hash, sig])


def universal_validator_calldata(address: str, message_hash: bytes, sig: bytes) -> bytes:
    return UNIVERSAL_VALIDATOR_BYTECODE + abi_encode(["address", "bytes32", "bytes"], [address, message_hash, sig])


def _is_magic(return_data: bytes) -> bool:
    return return_data[:4] == ERC1271_MAGIC_VALUE


def expand_compact_signature(sig: bytes) -> bytes:
    """EIP-2098 r || yParityAndS to r || s || v."""
    y_parity_and_s = int.from_bytes(sig[32:64], "big")
    s = y_parity_and_s & ((1 << 255) - 1)
    v = 27 + (y_parity_and_s >> 255)
    return sig[:32] + s.to_bytes(32, "big") + bytes([v])


def recover_signer(message: str, sig: bytes) -> Optional[str]:
    """EIP-191 recovery; None when the signature cannot be recovered."""
    if len(sig) == 64:
        sig = expand_compact_signature(sig)
    try:
        return Account.recover_message(encode_defunct(text=message), signature=sig)
    except Exception as e:
        logger.debug("ECDSA recovery failed: %s", e)
        return None


class SignatureVerifier:
    def __init__(
        self,
        rpc_for_chain: Callable[[int], Optional[ChainRpcClient]] = rpc_client_for_chain,
        timeout: float = None,
    ):
        self.rpc_for_chain = rpc_for_chain
        self.timeout = timeout if timeout is not None else settings.VERIFY_TIMEOUT_SECONDS

    async def verify(self, address: str, message: str, signature: str, chain_id: int) -> bool:
        """True if ``address`` signed ``message``.

        Raises InvalidAddress / InvalidSignatureFormat for unusable input and
        VerificationUnavailable when the chain could not be asked.
        """
        checksummed = normalize_address(address)
        sig = normalize_signature(signature)
        scheme = classify_signature(sig)

        if scheme == SignatureScheme.ECDSA:
            recovered = recover_signer(message, sig)
            if recovered == checksummed:
                logger.info("ECDSA signature verified for %s", checksummed)
                return True
            logger.info("ECDSA recovery gave %s, expected %s; trying contract wallet", recovered, checksummed)

        rpc = self.rpc_for_chain(chain_id)
        if rpc is None:
            raise VerificationUnavailable(f"No RPC endpoint configured for chain {chain_id}")

        try:
            valid = await asyncio.wait_for(
                self._verify_on_chain(rpc, checksummed, message, sig, scheme), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("On-chain verification for %s timed out after %ss", checksummed, self.timeout)
            raise VerificationUnavailable("Signature verification timed out")
        except RpcError as e:
            logger.warning("On-chain verification for %s unavailable: %s", checksummed, e)
            raise VerificationUnavailable(str(e))

        logger.info("%s signature for %s: %s", scheme.value, checksummed, "valid" if valid else "invalid")
        return valid

    async def _verify_on_chain(
        self, rpc: ChainRpcClient, address: str, message: str, sig: bytes, scheme: SignatureScheme
    ) -> bool:
        message_hash = bytes(defunct_hash_message(text=message))
        wrapped = unwrap_erc6492(sig) if scheme == SignatureScheme.ERC6492 else None
        inner_sig = wrapped.signature if wrapped else sig

        code = await rpc.get_code(address)
        if code:
            if await self._erc1271(rpc, address, message_hash, inner_sig):
                return True
            if wrapped is None:
                return False
            # Deployed but may need the factory call first (e.g. pending upgrade).

        if wrapped is None:
            logger.info("%s has no contract code and signature is not ERC-6492 wrapped", address)
            return False
        return await self._erc6492_deployless(rpc, address, message_hash, sig)

    async def _erc1271(self, rpc: ChainRpcClient, address: str, message_hash: bytes, sig: bytes) -> bool:
        try:
            result = await rpc.call(address, is_valid_signature_calldata(message_hash, sig))
        except RpcReverted as e:
            logger.info("isValidSignature reverted for %s: %s", address, e)
            return False
        return _is_magic(result)

    async def _erc6492_deployless(self, rpc: ChainRpcClient, address: str, message_hash: bytes, sig: bytes) -> bool:
        """Factory deployment and isValidSignature in one deployless eth_call."""
        try:
            result = await rpc.call(None, universal_validator_calldata(address, message_hash, sig))
        except RpcReverted as e:
            logger.info("ERC-6492 validation reverted for %s: %s", address, e)
            return False
        return result == b"\x01"
