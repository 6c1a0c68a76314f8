"""EIP-3009 transfer authorization signing.

Builds the ``TransferWithAuthorization`` typed-data message for a payment
requirement and signs it with EIP-712, so the signature is bound to the
chain id and token contract (domain) as well as payer, payee, value, window
and nonce (message).
"""

import secrets
import time
from typing import Any, Callable, Dict, Optional, Union

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from pydantic import ValidationError

from ..config import config
from ..constants import EIP712_DOMAIN_FIELDS, TRANSFER_WITH_AUTHORIZATION_FIELDS
from ..errors import AuthorizationFieldMissingError, SigningError, SigningKeyUnavailableError
from ..logging_utils import get_logger
from ..models import PaymentPayload, PaymentRequirement, TransferAuthorization

logger = get_logger(__name__)

NONCE_BYTES = 32

# Challenge fields the signature binds (wire names)
BOUND_FIELDS = ("recipient", "amount", "chainId", "token")


def build_typed_data(
    *,
    chain_id: int,
    token: str,
    payer: str,
    payee: str,
    value: int,
    valid_after: int,
    valid_before: int,
    nonce: bytes,
    token_name: str,
    token_version: str,
) -> SignableMessage:
    """Encode a TransferWithAuthorization message under the token's EIP-712 domain."""
    return encode_typed_data(
        full_message={
            "types": {
                "EIP712Domain": EIP712_DOMAIN_FIELDS,
                "TransferWithAuthorization": TRANSFER_WITH_AUTHORIZATION_FIELDS,
            },
            "primaryType": "TransferWithAuthorization",
            "domain": {
                "name": token_name,
                "version": token_version,
                "chainId": chain_id,
                "verifyingContract": token,
            },
            "message": {
                "from": payer,
                "to": payee,
                "value": value,
                "validAfter": valid_after,
                "validBefore": valid_before,
                "nonce": nonce,
            },
        }
    )


def recover_authorization_signer(
    payload: PaymentPayload,
    token_name: str = config.token_name,
    token_version: str = config.token_version,
) -> str:
    """Recover the address that signed a payment payload.

    The authorization is genuine only if the result equals ``payload.authorization.payer``.
    """
    auth = payload.authorization
    signable = build_typed_data(
        chain_id=payload.chain_id,
        token=payload.token,
        payer=auth.payer,
        payee=auth.payee,
        value=auth.value,
        valid_after=auth.valid_after,
        valid_before=auth.valid_before,
        nonce=bytes.fromhex(auth.nonce[2:]),
        token_name=token_name,
        token_version=token_version,
    )
    return Account.recover_message(signable, signature=bytes.fromhex(auth.signature[2:]))


def _requirement_fields(requirement: Union[PaymentRequirement, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(requirement, PaymentRequirement):
        fields = requirement.model_dump(by_alias=True)
    else:
        fields = dict(requirement)

    missing = [name for name in BOUND_FIELDS if fields.get(name) in (None, "")]
    if missing:
        raise AuthorizationFieldMissingError(missing)
    return fields


class AuthorizationSigner:
    """Signs transfer authorizations on behalf of one payer."""

    def __init__(
        self,
        private_key: Optional[str],
        validity_seconds: int = config.authorization_validity_seconds,
        token_name: str = config.token_name,
        token_version: str = config.token_version,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the signer.

        Args:
            private_key: Hex private key of the payer. May be empty; signing then
                fails with SigningKeyUnavailableError.
            validity_seconds: Default length of the validity window.
            token_name: EIP-712 domain name of the token contract.
            token_version: EIP-712 domain version of the token contract.
            clock: Source of the current Unix time.
        """
        self._private_key = private_key
        self.validity_seconds = validity_seconds
        self.token_name = token_name
        self.token_version = token_version
        self.clock = clock

    def _account(self):
        if not self._private_key:
            raise SigningKeyUnavailableError("No signing key configured")
        try:
            return Account.from_key(self._private_key)
        except (ValueError, TypeError) as e:
            raise SigningKeyUnavailableError(f"Signing key is not usable: {e}") from e

    @property
    def address(self) -> str:
        return self._account().address

    def sign(
        self,
        requirement: Union[PaymentRequirement, Dict[str, Any]],
        valid_after: Optional[int] = None,
        valid_before: Optional[int] = None,
        nonce: Optional[bytes] = None,
    ) -> PaymentPayload:
        """Sign an authorization that satisfies a payment requirement.

        Args:
            requirement: The requirement, or the raw 402 challenge body.
            valid_after: Start of the validity window. Defaults to now.
            valid_before: End of the validity window (exclusive).
                Defaults to ``valid_after + validity_seconds``.
            nonce: 32-byte nonce. Defaults to fresh CSPRNG output.

        Returns:
            The signed payload, ready for codec.encode.

        Raises:
            AuthorizationFieldMissingError: If the requirement lacks a bound field.
            SigningKeyUnavailableError: If no usable key is configured.
            SigningError: If the window is empty or a field is invalid.
        """
        fields = _requirement_fields(requirement)
        account = self._account()

        if valid_after is None:
            valid_after = int(self.clock())
        if valid_before is None:
            valid_before = valid_after + self.validity_seconds
        if valid_before <= valid_after:
            raise SigningError("validBefore must be later than validAfter")

        if nonce is None:
            nonce = secrets.token_bytes(NONCE_BYTES)
        if len(nonce) != NONCE_BYTES:
            raise SigningError("nonce must be 32 bytes")

        try:
            chain_id = int(fields["chainId"])
            value = int(fields["amount"])
            unsigned = TransferAuthorization(
                payer=account.address,
                payee=fields["recipient"],
                value=value,
                valid_after=valid_after,
                valid_before=valid_before,
                nonce="0x" + nonce.hex(),
                signature="0x" + "00" * 65,
            )
            token = PaymentPayload(
                chain_id=chain_id, token=fields["token"], authorization=unsigned
            ).token
        except (ValueError, ValidationError) as e:
            raise SigningError(f"Payment requirement is invalid: {e}") from e

        signable = build_typed_data(
            chain_id=chain_id,
            token=token,
            payer=unsigned.payer,
            payee=unsigned.payee,
            value=unsigned.value,
            valid_after=valid_after,
            valid_before=valid_before,
            nonce=nonce,
            token_name=self.token_name,
            token_version=self.token_version,
        )
        signed = Account.sign_message(signable, private_key=account.key)

        authorization = unsigned.model_copy(
            update={"signature": "0x" + bytes(signed.signature).hex()}
        )
        logger.info(
            f"Signed authorization for {value} to {unsigned.payee} "
            f"(chain {chain_id}, nonce {authorization.nonce[:10]}...)"
        )
        return PaymentPayload(chain_id=chain_id, token=token, authorization=authorization)
