"""Local validation of oracle attestation bundles.

Everything here runs offline, before any transaction is built, so a bundle
that the claim authority would refuse never costs the user a fee. The schema
is strict: any deviation from the contracted encoding is a MalformedBundle.
"""
import base64
import logging
from dataclasses import dataclass
from typing import Union

from algosdk import util

from .abi_structures import (
    AUTH_TYPES,
    ECHOED_KERNEL_PARAMS_TYPES,
    ECHOED_KERNEL_RESPONSES_TYPES,
    FUNCTION_PARAMS_TYPES,
    KERNEL_PARAMS_TYPES,
    KERNEL_RESULT_TYPES,
    AuthPayload,
    EchoedKernelParam,
    KernelResponse,
)
from .encoder import address_bytes, decode, digest
from .errors import ConfigError, EncodingError, Ineligible, MalformedBundle, ParameterMismatch
from .kernel_client import AttestationBundle

logger = logging.getLogger(__name__)

INELIGIBLE = Ineligible.kind
PARAMETER_MISMATCH = ParameterMismatch.kind
MALFORMED_BUNDLE = MalformedBundle.kind


@dataclass(frozen=True)
class Authorized:
    token: str
    amount: int
    attested_amount: int
    nonce: int


@dataclass(frozen=True)
class Rejected:
    reason: str
    detail: str = ""

    def to_error(self):
        error_class = {
            INELIGIBLE: Ineligible,
            PARAMETER_MISMATCH: ParameterMismatch,
            MALFORMED_BUNDLE: MalformedBundle,
        }[self.reason]
        return error_class(self.detail)


VerificationResult = Union[Authorized, Rejected]


class AuthorityKey():
    """ed25519 public key of the oracle's signing authority, given as an address."""

    def __init__(self, address: str):
        self.address = address

    def verify(self, message: bytes, signature: bytes) -> bool:
        if len(signature) != 64:
            return False
        return util.verify_bytes(message, base64.b64encode(signature).decode(), self.address)


def data_digest(function_params: bytes, kernel_param_object_digest: bytes, claimant_pk: bytes, nonce: int, final_opinion: bool) -> bytes:
    """Digest the authority signs to bind the attestation to one on-chain call."""
    return digest(
        digest(function_params),
        kernel_param_object_digest,
        claimant_pk,
        nonce.to_bytes(32, "big"),
        b"\x01" if final_opinion else b"\x00",
    )


class _Reject(Exception):
    def __init__(self, reason: str, detail: str):
        super().__init__(detail)
        self.result = Rejected(reason, detail)


def _decode_field(name: str, types, data: bytes) -> tuple:
    try:
        return decode(types, data)
    except EncodingError as exc:
        raise _Reject(MALFORMED_BUNDLE, f"{name}: {exc}") from exc


class AttestationVerifier():
    def __init__(self, kernel_id: int, authority: AuthorityKey):
        # the signature token is what binds an attestation to one set of function params
        if authority is None:
            raise ConfigError("an authority key is required to verify attestations")
        self.kernel_id = kernel_id
        self.authority = authority

    @classmethod
    def from_config(cls, config):
        return cls(config.kernel_id, AuthorityKey(config.authority_address))

    def verify(self, bundle: AttestationBundle, expected_function_params: bytes, claimant: str) -> VerificationResult:
        # our own parameters are local input; a bad encoding here is an EncodingError, not a rejection
        token, amount = decode(FUNCTION_PARAMS_TYPES, expected_function_params)
        claimant_pk = address_bytes(claimant)

        try:
            result = self._verify(bundle, expected_function_params, token, amount, claimant, claimant_pk)
        except _Reject as rejection:
            result = rejection.result
            logger.warning("attestation rejected: %s %s", result.reason, result.detail)
        return result

    def _verify(self, bundle, function_params, token, amount, claimant, claimant_pk) -> Authorized:
        for name in ("auth", "echoed_kernel_params", "echoed_kernel_responses"):
            value = getattr(bundle, name)
            if not isinstance(value, (bytes, bytearray)) or not value:
                raise _Reject(MALFORMED_BUNDLE, f"{name} is empty")

        # responses first: a bad shape here stops before anything else is decoded
        (raw_responses,) = _decode_field("kernel_responses", ECHOED_KERNEL_RESPONSES_TYPES, bundle.echoed_kernel_responses)
        responses = [KernelResponse(*r) for r in raw_responses]
        if not responses:
            raise _Reject(MALFORMED_BUNDLE, "kernel_responses holds no kernel calls")

        (raw_params,) = _decode_field("kernel_params", ECHOED_KERNEL_PARAMS_TYPES, bundle.echoed_kernel_params)
        params = [EchoedKernelParam(*p) for p in raw_params]
        if len(params) != len(responses):
            raise _Reject(
                MALFORMED_BUNDLE,
                f"{len(params)} kernel params for {len(responses)} kernel responses",
            )

        auth = AuthPayload(*_decode_field("auth", AUTH_TYPES, bundle.auth))

        # other kernels in the same request carry payloads of their own shapes
        index = next((i for i, r in enumerate(responses) if r.kernel_id == self.kernel_id), None)
        if index is None:
            raise _Reject(PARAMETER_MISMATCH, f"no response from kernel {self.kernel_id}")
        response = responses[index]
        kernel_token, kernel_user = _decode_field(f"kernel_params[{index}].payload", KERNEL_PARAMS_TYPES, params[index].payload)
        attested_amount = 0
        if not response.error:
            (attested_amount,) = _decode_field(f"kernel_responses[{index}].result", KERNEL_RESULT_TYPES, response.result)

        if auth.kernel_param_object_digest != digest(bundle.echoed_kernel_params, claimant_pk):
            raise _Reject(PARAMETER_MISMATCH, "kernel params digest does not match the echoed params for this claimant")
        if kernel_user != claimant:
            raise _Reject(PARAMETER_MISMATCH, f"attestation was issued for {kernel_user}, not {claimant}")
        if kernel_token != token:
            raise _Reject(PARAMETER_MISMATCH, f"attestation covers token {kernel_token}, claim is for {token}")

        if not self.authority.verify(digest(bundle.echoed_kernel_responses, claimant_pk), auth.kernel_response_signature):
            raise _Reject(MALFORMED_BUNDLE, "kernel responses are not signed by the token authority")
        signed = data_digest(function_params, auth.kernel_param_object_digest, claimant_pk, auth.nonce, auth.final_opinion)
        if not self.authority.verify(signed, auth.signature_token):
            raise _Reject(PARAMETER_MISMATCH, "signature token does not cover these function params")

        if not auth.final_opinion:
            raise _Reject(INELIGIBLE, "oracle final opinion is negative")
        if response.error:
            raise _Reject(INELIGIBLE, f"kernel reported: {response.error}")

        if attested_amount == 0:
            raise _Reject(INELIGIBLE, "kernel attests nothing has vested")
        if amount > attested_amount:
            raise _Reject(INELIGIBLE, f"requested {amount} but only {attested_amount} is attested")

        return Authorized(token=token, amount=amount, attested_amount=attested_amount, nonce=auth.nonce)
