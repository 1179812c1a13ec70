import base64
from dataclasses import dataclass

import pytest
from algosdk import account, util
from algosdk.logic import get_application_address

from vesting_claim.abi_structures import (
    AUTH_TYPES,
    ECHOED_KERNEL_PARAMS_TYPES,
    ECHOED_KERNEL_RESPONSES_TYPES,
    KERNEL_PARAMS_TYPES,
    KERNEL_RESULT_TYPES,
)
from vesting_claim.config import Config, NetworkConfig
from vesting_claim.contracts import PromptingSigner, ReadCache, Receipt, TransactionHandle
from vesting_claim.encoder import address_bytes, decode, digest, encode
from vesting_claim.errors import SimulationReverted, TransactionReverted
from vesting_claim.kernel_client import AttestationBundle
from vesting_claim.orchestrator import ClaimOrchestrator
from vesting_claim.verifier import AttestationVerifier, AuthorityKey, data_digest
from vesting_claim.vesting import SECONDS_PER_DAY, ClaimLedgerEntry, VestingSchedule, vested_amount

KERNEL_ID = 1337
TOKEN_APP_ID = 1001
AUTHORITY_APP_ID = 1002
REGISTRY_APP_ID = 1003
T0 = 1_700_000_000


def sign(private_key, message: bytes) -> bytes:
    return base64.b64decode(util.sign_bytes(message, private_key))


def make_bundle(
    token,
    user,
    attested,
    function_params,
    claimant=None,
    authority_key=None,
    final_opinion=True,
    kernel_error="",
    nonce=7,
    kernel_id=KERNEL_ID,
):
    """Build a bundle the way the oracle would, optionally signed with ``authority_key``."""
    claimant_pk = address_bytes(claimant or user)
    result = b"" if kernel_error else encode(KERNEL_RESULT_TYPES, [attested])
    kernel_params = encode(
        ECHOED_KERNEL_PARAMS_TYPES,
        [[(0, encode(KERNEL_PARAMS_TYPES, [token, user]), "")]],
    )
    kernel_responses = encode(ECHOED_KERNEL_RESPONSES_TYPES, [[(kernel_id, result, kernel_error)]])

    kpod = digest(kernel_params, claimant_pk)
    response_signature = b""
    signature_token = b""
    if authority_key is not None:
        response_signature = sign(authority_key, digest(kernel_responses, claimant_pk))
        signature_token = sign(authority_key, data_digest(function_params, kpod, claimant_pk, nonce, final_opinion))

    auth = encode(AUTH_TYPES, [response_signature, kpod, signature_token, nonce, final_opinion])
    return AttestationBundle(auth=auth, echoed_kernel_params=kernel_params, echoed_kernel_responses=kernel_responses)


@dataclass(frozen=True)
class FakeCall:
    contract: "FakeContract"
    method: str
    args: tuple


class FakeChain():
    """In-memory state of the token, claim authority and registry contracts."""

    def __init__(self, now=T0):
        self.now = now
        self.cache = ReadCache()
        self.balances = {}
        self.allowances = {}
        self.deposits = {}
        self.claims = {}
        self.schedules = {}
        self.eligible = {}
        self.simulated = []
        self.submitted = []
        self.reads = 0
        self.revert_on_submit = None

    def vested(self, token):
        schedule = self.schedules.get(token)
        return vested_amount(schedule, self.now) if schedule else 0


class FakeContract():
    network = "fake"

    def __init__(self, chain: FakeChain, id: int):
        self.chain = chain
        self.id = id
        self.address = get_application_address(id)

    def call(self, method, *args):
        return FakeCall(self, method, tuple(args))

    def read(self, key, load):
        def counted():
            self.chain.reads += 1
            return load()
        return self.chain.cache.get((self.id,) + key, counted)

    def simulate(self, call, sender):
        self.chain.simulated.append(call.method)
        reason = getattr(self, "_check_" + call.method)(sender, *call.args)
        if reason:
            raise SimulationReverted(reason)

    def submit(self, call, sender, signer):
        signer.sign_transactions([call], [0])
        if self.chain.revert_on_submit:
            raise TransactionReverted(self.chain.revert_on_submit)
        # the contract re-checks atomically when the transaction executes
        reason = getattr(self, "_check_" + call.method)(sender, *call.args)
        if reason:
            raise TransactionReverted(reason)
        getattr(self, "_apply_" + call.method)(sender, *call.args)
        tx_id = f"TX{len(self.chain.submitted) + 1}"
        self.chain.submitted.append((call.method, sender, call.args))
        return TransactionHandle(tx_id, self.network, self.id, call.method)

    def wait(self, handle):
        return Receipt(handle.tx_id, len(self.chain.submitted))


class FakeToken(FakeContract):
    def allowance(self, owner, spender):
        return self.read(("allowance", owner, spender), lambda: self.chain.allowances.get((owner, spender), 0))

    def balance_of(self, owner):
        return self.read(("balance", owner), lambda: self.chain.balances.get(owner, 0))

    def approve(self, spender, amount):
        return self.call("approve", spender, amount)

    def _check_approve(self, sender, spender, amount):
        return None

    def _apply_approve(self, sender, spender, amount):
        self.chain.allowances[(sender, spender)] = amount


class FakeClaimAuthority(FakeContract):
    def deposit(self, token, amount):
        return self.call("deposit", token, amount)

    def claim(self, bundle, token, amount):
        return self.call("claim", bundle, token, amount)

    def withdraw(self, token, amount):
        return self.call("withdraw", token, amount)

    def ledger_entry(self, user, token):
        return self.read(
            ("ledger", user, token),
            lambda: ClaimLedgerEntry(self.chain.deposits.get((user, token), 0), self.chain.claims.get((user, token), 0)),
        )

    def _check_deposit(self, sender, token, amount):
        if self.chain.allowances.get((sender, self.address), 0) < amount:
            return "insufficient allowance"
        if self.chain.balances.get(sender, 0) < amount:
            return "insufficient balance"
        return None

    def _apply_deposit(self, sender, token, amount):
        self.chain.allowances[(sender, self.address)] -= amount
        self.chain.balances[sender] -= amount
        self.chain.deposits[(sender, token)] = self.chain.deposits.get((sender, token), 0) + amount

    def _check_claim(self, sender, bundle, token, amount):
        claimed = self.chain.claims.get((sender, token), 0)
        if claimed + amount > self.chain.vested(token):
            return "claim exceeds vested amount"
        if claimed + amount > self.chain.deposits.get((sender, token), 0):
            return "claim exceeds deposit"
        return None

    def _apply_claim(self, sender, bundle, token, amount):
        self.chain.claims[(sender, token)] = self.chain.claims.get((sender, token), 0) + amount
        self.chain.balances[sender] = self.chain.balances.get(sender, 0) + amount

    def _check_withdraw(self, sender, token, amount):
        left = self.chain.deposits.get((sender, token), 0) - self.chain.claims.get((sender, token), 0)
        return "withdraw exceeds deposit" if amount > left else None

    def _apply_withdraw(self, sender, token, amount):
        self.chain.deposits[(sender, token)] -= amount
        self.chain.balances[sender] = self.chain.balances.get(sender, 0) + amount


class FakeRegistry(FakeContract):
    def create_vesting_schedule(self, request):
        return self.call("create_vesting_schedule", request)

    def get_vesting_schedule(self, token):
        return self.read(("schedule", token), lambda: self.chain.schedules[token])

    def has_active_schedule(self, token):
        return self.read(("active", token), lambda: token in self.chain.schedules)

    def is_address_eligible(self, token, user):
        return self.read(("eligible", token, user), lambda: user in self.chain.eligible.get(token, ()))

    def get_vested_amount(self, token, user):
        return self.read(("vested", token, user), lambda: self.chain.vested(token))

    def get_all_tokens(self):
        return self.read(("tokens",), lambda: list(self.chain.schedules))

    def _check_create_vesting_schedule(self, sender, request):
        return "schedule already exists" if request.token in self.chain.schedules else None

    def _apply_create_vesting_schedule(self, sender, request):
        self.chain.schedules[request.token] = request.as_schedule(creator=sender)
        self.chain.eligible[request.token] = set(request.eligible_addresses)


class FakeKernel():
    """Answers kernel requests with the vested amount the registry would attest."""

    def __init__(self, chain, authority_key):
        self.chain = chain
        self.authority_key = authority_key
        self.requests = []
        self.attested = None
        self.final_opinion = True
        self.error = None

    def execute(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        token, user = decode(KERNEL_PARAMS_TYPES, request.kernel_params)
        attested = self.attested if self.attested is not None else self.chain.vested(token)
        return make_bundle(
            token,
            user,
            attested,
            request.function_params,
            authority_key=self.authority_key,
            final_opinion=self.final_opinion,
            nonce=len(self.requests),
        )


class FakeSigner():
    def __init__(self):
        self.signed = 0

    def sign_transactions(self, txn_group, indexes):
        self.signed += 1
        return [b"signed" for _ in indexes]


@pytest.fixture
def claimant():
    return account.generate_account()[1]


@pytest.fixture
def authority_keypair():
    return account.generate_account()


@pytest.fixture
def token_address():
    return get_application_address(TOKEN_APP_ID)


@pytest.fixture
def config(authority_keypair):
    return Config(
        oracle_url="http://oracle.test/rpc",
        entry_id="entry-1",
        access_token="access-1",
        kernel_id=KERNEL_ID,
        claim_network=NetworkConfig("claim", "http://localhost:4001"),
        registry_network=NetworkConfig("registry", "http://localhost:4002"),
        token_app_id=TOKEN_APP_ID,
        claim_authority_app_id=AUTHORITY_APP_ID,
        registry_app_id=REGISTRY_APP_ID,
        authority_address=authority_keypair[1],
    )


@pytest.fixture
def schedule(token_address):
    return VestingSchedule(
        token=token_address,
        total_amount=1000,
        start_time=T0,
        cliff_duration=10 * SECONDS_PER_DAY,
        vesting_duration=100 * SECONDS_PER_DAY,
    )


@pytest.fixture
def chain(claimant, schedule, token_address):
    chain = FakeChain()
    chain.schedules[token_address] = schedule
    chain.eligible[token_address] = {claimant}
    chain.balances[claimant] = 5000
    return chain


@pytest.fixture
def confirmations():
    """Answers handed to the signature prompt, True while empty."""
    return []


@pytest.fixture
def orchestrator(config, chain, claimant, authority_keypair, confirmations):
    inner = FakeSigner()
    signer = PromptingSigner(inner, lambda group, indexes: confirmations.pop(0) if confirmations else True)
    return ClaimOrchestrator(
        config,
        claimant,
        signer,
        token=FakeToken(chain, TOKEN_APP_ID),
        authority=FakeClaimAuthority(chain, AUTHORITY_APP_ID),
        registry=FakeRegistry(chain, REGISTRY_APP_ID),
        kernel_client=FakeKernel(chain, authority_keypair[0]),
        verifier=AttestationVerifier(KERNEL_ID, AuthorityKey(authority_keypair[1])),
        cache=chain.cache,
        clock=lambda: chain.now,
    )
