from typing import NamedTuple

from algosdk import abi as algosdkAbi

# (token, user) consumed by the vesting kernel to decide eligibility
KERNEL_PARAMS_TYPES = ("address", "address")

# (token, amount) executed on-chain by the claim authority
FUNCTION_PARAMS_TYPES = ("address", "uint256")

# vested amount attested by the kernel for (token, user)
KERNEL_RESULT_TYPES = ("uint256",)

# one (status, payload, note) per kernel call in the request
ECHOED_KERNEL_PARAMS_TYPES = ("(uint8,byte[],string)[]",)

# one (kernel_id, result, error) per kernel call in the request
ECHOED_KERNEL_RESPONSES_TYPES = ("(uint256,byte[],string)[]",)

# both oracle signatures, the params digest, the nonce and the final opinion
AUTH_TYPES = ("byte[]", "byte[32]", "byte[]", "uint256", "bool")

# the bundle as passed to claim((byte[],byte[],byte[]),address,uint256)void
AttestationBundleAlgoSdk = algosdkAbi.TupleType([
        algosdkAbi.ArrayDynamicType(algosdkAbi.ByteType()), # auth
        algosdkAbi.ArrayDynamicType(algosdkAbi.ByteType()), # kernel_responses
        algosdkAbi.ArrayDynamicType(algosdkAbi.ByteType()), # kernel_params
    ])


class EchoedKernelParam(NamedTuple):
    status: int
    payload: bytes
    note: str


class KernelResponse(NamedTuple):
    kernel_id: int
    result: bytes
    error: str


class AuthPayload(NamedTuple):
    kernel_response_signature: bytes
    kernel_param_object_digest: bytes
    signature_token: bytes
    nonce: int
    final_opinion: bool
