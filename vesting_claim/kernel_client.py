"""Transport to the kernel execution oracle.

The client ships canonically encoded parameters to the oracle and hands the
attestation bundle back unchanged. It makes no trust decision; that is the
verifier's job.
"""
import itertools
import logging
from dataclasses import dataclass

import requests

from .abi_structures import FUNCTION_PARAMS_TYPES, KERNEL_PARAMS_TYPES, AttestationBundleAlgoSdk
from .config import Config
from .encoder import digest, encode, from_hex, to_hex
from .errors import EncodingError, MalformedBundle, NetworkError, OracleRejected, Timeout

logger = logging.getLogger(__name__)

EXECUTE_METHOD = "krnl_executeKernels"


@dataclass(frozen=True)
class KernelRequest:
    entry_id: str
    access_token: str
    kernel_id: int
    sender: str
    kernel_params: bytes
    function_params: bytes

    def rpc_params(self) -> list:
        request_data = {
            "senderAddress": self.sender,
            "kernelPayload": {
                str(self.kernel_id): {"functionParams": to_hex(self.kernel_params)},
            },
        }
        return [self.entry_id, self.access_token, request_data, to_hex(self.function_params)]


@dataclass(frozen=True)
class AttestationBundle:
    auth: bytes
    echoed_kernel_params: bytes
    echoed_kernel_responses: bytes

    @classmethod
    def from_result(cls, result):
        if not isinstance(result, dict):
            raise MalformedBundle(f"oracle result is a {type(result).__name__}, not an object")
        fields = {}
        for wire_name, name in (
            ("auth", "auth"),
            ("kernel_params", "echoed_kernel_params"),
            ("kernel_responses", "echoed_kernel_responses"),
        ):
            if wire_name not in result:
                raise MalformedBundle(f"oracle result has no {wire_name}")
            try:
                fields[name] = from_hex(result[wire_name])
            except EncodingError as exc:
                raise MalformedBundle(f"{wire_name}: {exc}") from exc
        return cls(**fields)

    def to_abi(self) -> list:
        # field order of the (byte[],byte[],byte[]) claim argument
        return [self.auth, self.echoed_kernel_responses, self.echoed_kernel_params]

    def attestation_id(self) -> str:
        return digest(AttestationBundleAlgoSdk.encode(self.to_abi())).hex()


def build_request(config: Config, token: str, user: str, amount: int) -> KernelRequest:
    """Encode the kernel and function parameters for one claim."""
    return KernelRequest(
        entry_id=config.entry_id,
        access_token=config.access_token,
        kernel_id=config.kernel_id,
        sender=user,
        kernel_params=encode(KERNEL_PARAMS_TYPES, [token, user]),
        function_params=encode(FUNCTION_PARAMS_TYPES, [token, amount]),
    )


class KernelClient():
    def __init__(
        self,
        url: str,
        timeout: float,
        session: requests.Session = None
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config: Config, session: requests.Session = None):
        return cls(config.oracle_url, config.oracle_timeout, session)

    def execute(self, request: KernelRequest) -> AttestationBundle:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": EXECUTE_METHOD,
            "params": request.rpc_params(),
        }
        logger.debug("executing kernel %s for %s", request.kernel_id, request.sender)

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise Timeout(f"oracle did not answer within {self.timeout}s") from exc
        except requests.exceptions.RequestException as exc:
            raise NetworkError(f"oracle request failed: {exc}") from exc

        if response.status_code >= 500:
            raise NetworkError(f"oracle returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise OracleRejected(f"oracle returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as exc:
            raise NetworkError("oracle returned a body that is not JSON") from exc

        if not isinstance(body, dict):
            raise NetworkError("oracle returned an unexpected JSON-RPC envelope")
        if body.get("error") is not None:
            err = body["error"]
            if isinstance(err, dict):
                raise OracleRejected(str(err.get("message", err)), code=err.get("code"))
            raise OracleRejected(str(err))

        bundle = AttestationBundle.from_result(body.get("result"))
        logger.info("received attestation %s", bundle.attestation_id()[:16])
        return bundle
