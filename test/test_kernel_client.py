import pytest
import requests
import requests_mock

from vesting_claim.abi_structures import FUNCTION_PARAMS_TYPES, KERNEL_PARAMS_TYPES
from vesting_claim.encoder import decode, to_hex
from vesting_claim.errors import MalformedBundle, NetworkError, OracleRejected, Timeout
from vesting_claim.kernel_client import EXECUTE_METHOD, AttestationBundle, KernelClient, build_request

from conftest import KERNEL_ID, make_bundle

URL = "http://oracle.test/rpc"


@pytest.fixture
def request_(config, token_address, claimant):
    return build_request(config, token_address, claimant, 250)


@pytest.fixture
def client():
    return KernelClient(URL, timeout=5)


def rpc_result(bundle):
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {
            "auth": to_hex(bundle.auth),
            "kernel_params": to_hex(bundle.echoed_kernel_params),
            "kernel_responses": to_hex(bundle.echoed_kernel_responses),
        },
    }


def test_build_request_encodes_both_payloads(request_, token_address, claimant):
    assert request_.kernel_id == KERNEL_ID
    assert decode(KERNEL_PARAMS_TYPES, request_.kernel_params) == (token_address, claimant)
    assert decode(FUNCTION_PARAMS_TYPES, request_.function_params) == (token_address, 250)


def test_execute_posts_json_rpc_and_returns_bundle(client, request_, token_address, claimant):
    bundle = make_bundle(token_address, claimant, 500, request_.function_params)
    with requests_mock.Mocker() as m:
        post = m.post(URL, json=rpc_result(bundle))
        result = client.execute(request_)

    assert result == bundle
    body = post.last_request.json()
    assert body["method"] == EXECUTE_METHOD
    entry_id, access_token, request_data, function_params = body["params"]
    assert (entry_id, access_token) == ("entry-1", "access-1")
    assert request_data["senderAddress"] == claimant
    assert request_data["kernelPayload"][str(KERNEL_ID)]["functionParams"] == to_hex(request_.kernel_params)
    assert function_params == to_hex(request_.function_params)


def test_request_ids_increase(client, request_, token_address, claimant):
    bundle = make_bundle(token_address, claimant, 500, request_.function_params)
    with requests_mock.Mocker() as m:
        post = m.post(URL, json=rpc_result(bundle))
        client.execute(request_)
        client.execute(request_)
    assert [r.json()["id"] for r in post.request_history] == [1, 2]


def test_timeout(client, request_):
    with requests_mock.Mocker() as m:
        m.post(URL, exc=requests.exceptions.ReadTimeout)
        with pytest.raises(Timeout):
            client.execute(request_)


def test_connection_error_is_network_error(client, request_):
    with requests_mock.Mocker() as m:
        m.post(URL, exc=requests.exceptions.ConnectionError)
        with pytest.raises(NetworkError):
            client.execute(request_)


def test_server_error_is_network_error(client, request_):
    with requests_mock.Mocker() as m:
        m.post(URL, status_code=502, text="bad gateway")
        with pytest.raises(NetworkError) as exc_info:
            client.execute(request_)
    assert not isinstance(exc_info.value, Timeout)


def test_client_error_is_rejection(client, request_):
    with requests_mock.Mocker() as m:
        m.post(URL, status_code=400, text="bad request")
        with pytest.raises(OracleRejected):
            client.execute(request_)


def test_rpc_error_is_rejection(client, request_):
    with requests_mock.Mocker() as m:
        m.post(URL, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "invalid params"}})
        with pytest.raises(OracleRejected) as exc_info:
            client.execute(request_)
    assert exc_info.value.code == -32602
    assert exc_info.value.message == "invalid params"


def test_non_json_body(client, request_):
    with requests_mock.Mocker() as m:
        m.post(URL, text="<html>")
        with pytest.raises(NetworkError):
            client.execute(request_)


def test_missing_bundle_field(client, request_, token_address, claimant):
    body = rpc_result(make_bundle(token_address, claimant, 500, request_.function_params))
    del body["result"]["kernel_responses"]
    with requests_mock.Mocker() as m:
        m.post(URL, json=body)
        with pytest.raises(MalformedBundle):
            client.execute(request_)


def test_bundle_from_result_rejects_bad_hex():
    with pytest.raises(MalformedBundle):
        AttestationBundle.from_result({"auth": "0x0", "kernel_params": "0x", "kernel_responses": "0x"})
    with pytest.raises(MalformedBundle):
        AttestationBundle.from_result(None)


def test_bundle_abi_order_and_id(token_address, claimant, request_):
    bundle = make_bundle(token_address, claimant, 500, request_.function_params)
    assert bundle.to_abi() == [bundle.auth, bundle.echoed_kernel_responses, bundle.echoed_kernel_params]
    assert len(bundle.attestation_id()) == 64
    assert bundle.attestation_id() != make_bundle(token_address, claimant, 499, request_.function_params).attestation_id()
