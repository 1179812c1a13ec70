"""Clients for the on-chain contracts this system consumes.

Only the method signatures in ``abi/*.json`` are known here. Reads and dry
runs go through algod simulate with empty signatures; writes are composed,
signed by the caller's signer and confirmed before anyone treats them as done.
"""
import json
import logging
import pathlib
from dataclasses import dataclass
from typing import Any, Optional

import algokit_utils
from algosdk import error
from algosdk.abi.method import Method, get_method_by_name
from algosdk.atomic_transaction_composer import (
    AtomicTransactionComposer,
    EmptySigner,
    TransactionSigner,
)
from algosdk.logic import get_application_address
from algosdk.transaction import wait_for_confirmation
from algosdk.v2client.algod import AlgodClient
from algosdk.v2client.models import SimulateRequest

from .config import NetworkConfig
from .errors import NetworkError, SimulationReverted, TransactionReverted, UserCancelled
from .kernel_client import AttestationBundle
from .vesting import ClaimLedgerEntry, ScheduleRequest, VestingSchedule

logger = logging.getLogger(__name__)

ABI_PATH = pathlib.Path(__file__).parent / "abi"

WAIT_ROUNDS = 4

# covers the outer call plus the inner token transfer
INNER_CALL_FEE = 2000


def get_methods_list(file_path):
    with open(file_path) as json_file:
        abi_json = json.load(json_file)
    abi_methods = abi_json["methods"]

    methods_list = []
    for method in abi_methods:
        json_string = json.dumps(method)
        abi_method = Method.from_json(json_string)
        methods_list.append(abi_method)
    return methods_list


def get_client(network: NetworkConfig) -> AlgodClient:
    return algokit_utils.get_algod_client(
        algokit_utils.AlgoClientConfig(server=network.algod_server, token=network.algod_token)
    )


class ReadCache():
    """Read-side cache shared by the contract clients; cleared after every confirmed write."""

    def __init__(self):
        self._values = {}

    def get(self, key, load):
        if key not in self._values:
            self._values[key] = load()
        return self._values[key]

    def invalidate(self):
        logger.debug("invalidating %d cached reads", len(self._values))
        self._values.clear()

    def __len__(self):
        return len(self._values)


@dataclass(frozen=True)
class ChainCall:
    contract: "ContractClient"
    method: Method
    args: tuple

    @property
    def signature(self) -> str:
        return self.method.get_signature()

    def __str__(self):
        return f"{self.contract.network}:{self.contract.id}:{self.method.name}"


@dataclass(frozen=True)
class TransactionHandle:
    tx_id: str
    network: str
    app_id: int
    method: str


@dataclass(frozen=True)
class Receipt:
    tx_id: str
    confirmed_round: int


class ContractClient():
    ABI_FILE = None

    def __init__(
        self,
        algod_client: AlgodClient,
        id: int,
        network: str,
        cache: Optional[ReadCache] = None,
        foreign_apps=(),
        abi_path=None,
    ):
        self.client = algod_client
        self.id = id
        self.address = get_application_address(self.id)
        self.network = network
        self.cache = cache if cache is not None else ReadCache()
        self.foreign_apps = list(foreign_apps)
        self.methods = get_methods_list(pathlib.Path(abi_path or ABI_PATH) / self.ABI_FILE)

    def call(self, method_name: str, *args) -> ChainCall:
        return ChainCall(self, get_method_by_name(self.methods, method_name), tuple(args))

    def _composer(self, call: ChainCall, sender: str, signer: TransactionSigner) -> AtomicTransactionComposer:
        try:
            sp = self.client.suggested_params()
        except (error.AlgodHTTPError, OSError) as exc:
            raise NetworkError(f"{self.network}: cannot fetch suggested params: {exc}") from exc
        sp.flat_fee = True
        sp.fee = INNER_CALL_FEE

        atc = AtomicTransactionComposer()
        atc.add_method_call(
            app_id=self.id,
            method=call.method,
            sender=sender,
            sp=sp,
            signer=signer,
            method_args=list(call.args),
            foreign_apps=self.foreign_apps or None,
        )
        return atc

    def simulate(self, call: ChainCall, sender: str) -> Any:
        """Dry run ``call`` against current state; raises SimulationReverted instead of returning a failure."""
        atc = self._composer(call, sender, EmptySigner())
        request = SimulateRequest(txn_groups=[], allow_empty_signatures=True, allow_unnamed_resources=True)
        try:
            result = atc.simulate(self.client, request)
        except error.AlgodHTTPError as exc:
            if exc.code is not None and exc.code >= 500:
                raise NetworkError(f"{self.network}: simulate failed: {exc}") from exc
            raise SimulationReverted(str(exc)) from exc
        except OSError as exc:
            raise NetworkError(f"{self.network}: simulate failed: {exc}") from exc

        if result.failure_message:
            logger.warning("simulation of %s reverted: %s", call, result.failure_message)
            raise SimulationReverted(result.failure_message)
        return result.abi_results[0].return_value if result.abi_results else None

    def read(self, method_name: str, *args, sender: Optional[str] = None) -> Any:
        call = self.call(method_name, *args)
        key = (self.network, self.id, method_name, repr(args))
        return self.cache.get(key, lambda: self.simulate(call, sender or self.address))

    def submit(self, call: ChainCall, sender: str, signer: TransactionSigner) -> TransactionHandle:
        atc = self._composer(call, sender, signer)
        try:
            tx_ids = atc.submit(self.client)
        except error.AlgodHTTPError as exc:
            if exc.code is not None and exc.code >= 500:
                raise NetworkError(f"{self.network}: submit failed: {exc}") from exc
            raise TransactionReverted(str(exc)) from exc
        except OSError as exc:
            raise NetworkError(f"{self.network}: submit failed: {exc}") from exc

        logger.info("submitted %s as %s", call, tx_ids[0])
        return TransactionHandle(tx_ids[0], self.network, self.id, call.method.name)

    def wait(self, handle: TransactionHandle) -> Receipt:
        try:
            txn_result = wait_for_confirmation(self.client, handle.tx_id, WAIT_ROUNDS)
        except error.TransactionRejectedError as exc:
            raise TransactionReverted(str(exc), handle.tx_id) from exc
        except error.ConfirmationTimeoutError as exc:
            raise NetworkError(f"{handle.tx_id} not confirmed within {WAIT_ROUNDS} rounds") from exc
        except (error.AlgodHTTPError, OSError) as exc:
            # only node status polling raises these; the transaction itself may still land
            raise NetworkError(f"{self.network}: lost track of {handle.tx_id}: {exc}") from exc

        logger.info("confirmed %s in round %s", handle.tx_id, txn_result["confirmed-round"])
        return Receipt(handle.tx_id, txn_result["confirmed-round"])


class TokenContract(ContractClient):
    ABI_FILE = "token.json"

    def allowance(self, owner: str, spender: str) -> int:
        return self.read("arc200_allowance", owner, spender, sender=owner)

    def balance_of(self, owner: str) -> int:
        return self.read("arc200_balanceOf", owner, sender=owner)

    def approve(self, spender: str, amount: int) -> ChainCall:
        return self.call("arc200_approve", spender, amount)


class ClaimAuthority(ContractClient):
    ABI_FILE = "claim-authority.json"

    def deposit(self, token: str, amount: int) -> ChainCall:
        return self.call("deposit", token, amount)

    def claim(self, bundle: AttestationBundle, token: str, amount: int) -> ChainCall:
        return self.call("claim", bundle.to_abi(), token, amount)

    def withdraw(self, token: str, amount: int) -> ChainCall:
        return self.call("withdraw", token, amount)

    def get_user_deposits(self, user: str, token: str) -> int:
        return self.read("get_user_deposits", user, token, sender=user)

    def get_user_claims(self, user: str, token: str) -> int:
        return self.read("get_user_claims", user, token, sender=user)

    def ledger_entry(self, user: str, token: str) -> ClaimLedgerEntry:
        return ClaimLedgerEntry(
            deposited=self.get_user_deposits(user, token),
            claimed=self.get_user_claims(user, token),
        )


class VestingRegistry(ContractClient):
    ABI_FILE = "vesting-registry.json"

    def create_vesting_schedule(self, request: ScheduleRequest) -> ChainCall:
        return self.call("create_vesting_schedule", *request.abi_args())

    def get_vesting_schedule(self, token: str) -> VestingSchedule:
        return VestingSchedule.from_abi(self.read("get_vesting_schedule", token))

    def get_vested_amount(self, token: str, user: str) -> int:
        return self.read("get_vested_amount", token, user, sender=user)

    def is_address_eligible(self, token: str, user: str) -> bool:
        return self.read("is_address_eligible", token, user, sender=user)

    def has_active_schedule(self, token: str) -> bool:
        return self.read("has_active_schedule", token)

    def get_all_tokens(self) -> list:
        return self.read("get_all_tokens")


class PromptingSigner(TransactionSigner):
    """Wraps a signer and asks before every signature; a refusal raises UserCancelled."""

    def __init__(self, signer: TransactionSigner, confirm):
        super().__init__()
        self.signer = signer
        self.confirm = confirm

    def sign_transactions(self, txn_group, indexes):
        if not self.confirm(txn_group, indexes):
            raise UserCancelled("signature request rejected")
        return self.signer.sign_transactions(txn_group, indexes)
