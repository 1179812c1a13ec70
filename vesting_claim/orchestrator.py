"""Sequencing of claim, deposit, withdraw and schedule operations.

One orchestrator owns one ``OperationState``. Each step starts only after
the previous step's result is known, nothing is retried automatically, and
every attempt ends in exactly one ``Outcome``.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Sequence

from algosdk import encoding

from .config import Config
from .contracts import ClaimAuthority, ReadCache, TokenContract, VestingRegistry, get_client
from .errors import ClaimError, EncodingError, Ineligible, InvalidAmount, OperationInProgress, StateError
from .kernel_client import KernelClient, build_request
from .verifier import AttestationVerifier, Rejected
from .vesting import (
    ClaimLedgerEntry,
    ScheduleRequest,
    VestingSchedule,
    claimable_amount,
    remaining_deposit,
    vested_amount,
    vesting_progress,
)

logger = logging.getLogger(__name__)


class Phase(Enum):
    IDLE = "Idle"
    ENCODING = "Encoding"
    AWAITING_ATTESTATION = "AwaitingAttestation"
    VERIFYING = "Verifying"
    SIMULATING = "Simulating"
    SUBMITTING = "Submitting"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"


TERMINAL_PHASES = (Phase.CONFIRMED, Phase.FAILED)


@dataclass(frozen=True)
class FailureReason:
    kind: str
    detail: str = ""

    @classmethod
    def from_error(cls, exc: Exception):
        if isinstance(exc, ClaimError):
            return cls(exc.kind, exc.message)
        return cls(type(exc).__name__, str(exc))

    def __str__(self):
        return f"{self.kind}({self.detail})" if self.detail else self.kind


@dataclass(frozen=True)
class OperationState:
    phase: Phase = Phase.IDLE
    reason: Optional[FailureReason] = None

    @property
    def busy(self) -> bool:
        return self.phase not in (Phase.IDLE,) + TERMINAL_PHASES

    def __str__(self):
        if self.phase is Phase.FAILED:
            return f"Failed({self.reason})"
        return self.phase.value


class EventType(Enum):
    BEGIN = "begin"
    ENCODED = "encoded"
    ATTESTED = "attested"
    VERIFIED = "verified"
    SIMULATED = "simulated"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAIL = "fail"
    RESET = "reset"


@dataclass(frozen=True)
class Event:
    type: EventType
    needs_attestation: bool = False
    reason: Optional[FailureReason] = None


_NEXT_PHASE = {
    (Phase.IDLE, EventType.BEGIN): Phase.ENCODING,
    (Phase.AWAITING_ATTESTATION, EventType.ATTESTED): Phase.VERIFYING,
    (Phase.VERIFYING, EventType.VERIFIED): Phase.SIMULATING,
    (Phase.SIMULATING, EventType.SIMULATED): Phase.SUBMITTING,
    # broadcast, still waiting for the receipt
    (Phase.SUBMITTING, EventType.SUBMITTED): Phase.SUBMITTING,
    (Phase.SUBMITTING, EventType.CONFIRMED): Phase.CONFIRMED,
    (Phase.CONFIRMED, EventType.RESET): Phase.IDLE,
    (Phase.FAILED, EventType.RESET): Phase.IDLE,
}


def transition(state: OperationState, event: Event) -> OperationState:
    """Pure state machine step: the next state, or StateError if ``event`` is not allowed in ``state``."""
    if event.type is EventType.FAIL:
        if state.phase in TERMINAL_PHASES:
            raise StateError(f"cannot fail an operation that is already {state}")
        return OperationState(Phase.FAILED, event.reason or FailureReason(ClaimError.kind))

    if event.type is EventType.ENCODED and state.phase is Phase.ENCODING:
        # operations without an attestation go straight to the dry run
        next_phase = Phase.AWAITING_ATTESTATION if event.needs_attestation else Phase.SIMULATING
        return OperationState(next_phase)

    next_phase = _NEXT_PHASE.get((state.phase, event.type))
    if next_phase is None:
        raise StateError(f"{event.type.value} is not valid in state {state}")
    return OperationState(next_phase)


@dataclass(frozen=True)
class Outcome:
    operation: str
    state: OperationState
    tx_id: Optional[str] = None
    amount: int = 0
    attestation_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state.phase is Phase.CONFIRMED


@dataclass(frozen=True)
class AccountStatus:
    token: str
    schedule: Optional[VestingSchedule]
    eligible: bool
    ledger: ClaimLedgerEntry
    vested: int
    claimable: int
    remaining_deposit: int
    # None when no token application is configured for the token
    allowance: Optional[int]
    balance: Optional[int]
    progress: Decimal
    registry_vested: int = 0


@dataclass(frozen=True)
class TokenInfo:
    address: str
    app_id: Optional[int]
    active: bool


class ClaimOrchestrator():
    def __init__(
        self,
        config: Config,
        address: str,
        signer,
        token: TokenContract,
        authority: ClaimAuthority,
        registry: VestingRegistry,
        kernel_client: KernelClient,
        verifier: AttestationVerifier,
        cache: ReadCache,
        clock: Callable[[], float] = time.time,
        other_tokens: Sequence[TokenContract] = (),
    ):
        self.config = config
        self.address = address
        self.signer = signer
        self.token = token
        self.token_clients = {t.address: t for t in (token, *other_tokens)}
        self.authority = authority
        self.registry = registry
        self.kernel_client = kernel_client
        self.verifier = verifier
        self.cache = cache
        self.clock = clock

        self.state = OperationState()
        self.approval_state: Optional[OperationState] = None
        self.error: Optional[ClaimError] = None
        self.history = []

    @classmethod
    def from_config(cls, config: Config, address: str, signer, session=None, clock=time.time):
        cache = ReadCache()
        claim_client = get_client(config.claim_network)
        registry_client = get_client(config.registry_network)
        token_app_ids = [config.token_app_id, *config.extra_token_app_ids]
        tokens = [
            TokenContract(claim_client, app_id, config.claim_network.name, cache, abi_path=config.abi_path)
            for app_id in token_app_ids
        ]
        return cls(
            config,
            address,
            signer,
            token=tokens[0],
            authority=ClaimAuthority(
                claim_client,
                config.claim_authority_app_id,
                config.claim_network.name,
                cache,
                foreign_apps=token_app_ids,
                abi_path=config.abi_path,
            ),
            registry=VestingRegistry(
                registry_client, config.registry_app_id, config.registry_network.name, cache, abi_path=config.abi_path
            ),
            kernel_client=KernelClient.from_config(config, session),
            verifier=AttestationVerifier.from_config(config),
            cache=cache,
            clock=clock,
            other_tokens=tokens[1:],
        )

    @property
    def can_start(self) -> bool:
        return not self.state.busy

    def now(self) -> int:
        return int(self.clock())

    # state handling

    def _fire(self, event: Event):
        previous = self.state
        self.state = transition(self.state, event)
        self.history.append(self.state)
        logger.debug("%s -> %s", previous, self.state)

    def _run(self, operation: str, body: Callable[[], dict]) -> Outcome:
        if self.state.busy:
            raise OperationInProgress(f"{operation} requested while an operation is {self.state}")
        if self.state.phase in TERMINAL_PHASES:
            self._fire(Event(EventType.RESET))
        self.error = None
        self.approval_state = None
        self.history = [self.state]
        self._fire(Event(EventType.BEGIN))

        try:
            details = body()
        except ClaimError as exc:
            self.error = exc
            self._fire(Event(EventType.FAIL, reason=FailureReason.from_error(exc)))
            logger.warning("%s failed: %s", operation, self.state)
            return Outcome(operation, self.state)
        except Exception as exc:
            # unexpected errors still propagate, but never leave the orchestrator busy
            self._fire(Event(EventType.FAIL, reason=FailureReason.from_error(exc)))
            logger.exception("%s aborted: %s", operation, self.state)
            raise

        logger.info("%s confirmed in %s", operation, details.get("tx_id"))
        return Outcome(operation, self.state, **details)

    def _resolve_token(self, token: Optional[str]) -> str:
        if token is None:
            return self.token.address
        if not encoding.is_valid_address(token):
            raise EncodingError(f"{token!r} is not a valid token address")
        if token not in self.token_clients and not self.registry.has_active_schedule(token):
            raise EncodingError(f"token {token} is neither configured nor scheduled in the registry")
        return token

    def _token_client(self, token: str) -> TokenContract:
        if token not in self.token_clients:
            raise EncodingError(f"no token application configured for {token}")
        return self.token_clients[token]

    @staticmethod
    def _require_positive(amount: int):
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(f"amount must be a positive integer, got {amount!r}")

    def _simulate(self, call):
        call.contract.simulate(call, self.address)
        self._fire(Event(EventType.SIMULATED))

    def _submit(self, call) -> str:
        handle = call.contract.submit(call, self.address, self.signer)
        self._fire(Event(EventType.SUBMITTED))
        call.contract.wait(handle)
        self._fire(Event(EventType.CONFIRMED))
        self.cache.invalidate()
        return handle.tx_id

    def _ensure_allowance(self, token_client: TokenContract, amount: int):
        spender = self.authority.address
        allowance = token_client.allowance(self.address, spender)
        if allowance >= amount:
            return

        # nested approval cycle; the main flow waits here until it is confirmed
        logger.info("allowance %d below %d, approving %s", allowance, amount, spender)
        self.approval_state = transition(OperationState(), Event(EventType.BEGIN))
        try:
            call = token_client.approve(spender, amount)
            self.approval_state = transition(self.approval_state, Event(EventType.ENCODED))
            call.contract.simulate(call, self.address)
            self.approval_state = transition(self.approval_state, Event(EventType.SIMULATED))
            handle = call.contract.submit(call, self.address, self.signer)
            self.approval_state = transition(self.approval_state, Event(EventType.SUBMITTED))
            call.contract.wait(handle)
        except Exception as exc:
            self.approval_state = transition(
                self.approval_state, Event(EventType.FAIL, reason=FailureReason.from_error(exc))
            )
            raise
        self.approval_state = transition(self.approval_state, Event(EventType.CONFIRMED))
        self.cache.invalidate()

    # operations

    def claim(self, token: Optional[str], amount: int) -> Outcome:
        return self._run("claim", lambda: self._claim(self._resolve_token(token), amount))

    def _claim(self, token: str, amount: int) -> dict:
        self._require_positive(amount)
        request = build_request(self.config, token, self.address, amount)
        self._check_vested(token, amount)
        self._fire(Event(EventType.ENCODED, needs_attestation=True))

        bundle = self.kernel_client.execute(request)
        self._fire(Event(EventType.ATTESTED))

        result = self.verifier.verify(bundle, request.function_params, self.address)
        if isinstance(result, Rejected):
            raise result.to_error()
        self._fire(Event(EventType.VERIFIED))

        call = self.authority.claim(bundle, token, amount)
        self._simulate(call)
        tx_id = self._submit(call)
        return {"tx_id": tx_id, "amount": amount, "attestation_id": bundle.attestation_id()}

    def _check_vested(self, token: str, amount: int):
        if not self.registry.has_active_schedule(token):
            raise Ineligible(f"no active vesting schedule for {token}")
        if not self.registry.is_address_eligible(token, self.address):
            raise Ineligible(f"{self.address} is not eligible for {token}")

        # bound by what has vested, not by what is still claimable: the claim
        # authority owns the claimed counter and rejects overdraws itself
        vested = vested_amount(self.registry.get_vesting_schedule(token), self.now())
        if amount > vested:
            raise InvalidAmount(f"requested {amount} but only {vested} has vested")

    def deposit(self, token: Optional[str], amount: int) -> Outcome:
        return self._run("deposit", lambda: self._deposit(self._resolve_token(token), amount))

    def _deposit(self, token: str, amount: int) -> dict:
        self._require_positive(amount)
        token_client = self._token_client(token)
        call = self.authority.deposit(token, amount)
        self._ensure_allowance(token_client, amount)
        self._fire(Event(EventType.ENCODED))
        self._simulate(call)
        return {"tx_id": self._submit(call), "amount": amount}

    def withdraw(self, token: Optional[str], amount: int) -> Outcome:
        return self._run("withdraw", lambda: self._withdraw(self._resolve_token(token), amount))

    def _withdraw(self, token: str, amount: int) -> dict:
        self._require_positive(amount)
        available = remaining_deposit(self.authority.ledger_entry(self.address, token))
        if amount > available:
            raise InvalidAmount(f"requested {amount} but only {available} is left on deposit")
        call = self.authority.withdraw(token, amount)
        self._fire(Event(EventType.ENCODED))
        self._simulate(call)
        return {"tx_id": self._submit(call), "amount": amount}

    def create_schedule(self, request: ScheduleRequest) -> Outcome:
        return self._run("create_schedule", lambda: self._create_schedule(request))

    def _create_schedule(self, request: ScheduleRequest) -> dict:
        call = self.registry.create_vesting_schedule(request)
        self._fire(Event(EventType.ENCODED))
        self._simulate(call)
        return {"tx_id": self._submit(call), "amount": request.total_amount}

    def status(self, token: Optional[str] = None) -> AccountStatus:
        token = self._resolve_token(token)
        now = self.now()
        ledger = self.authority.ledger_entry(self.address, token)

        schedule = None
        eligible = False
        vested = claimable = registry_vested = 0
        progress = Decimal(0)
        if self.registry.has_active_schedule(token):
            schedule = self.registry.get_vesting_schedule(token)
            eligible = self.registry.is_address_eligible(token, self.address)
            vested = vested_amount(schedule, now)
            claimable = claimable_amount(ledger, schedule, now)
            progress = vesting_progress(schedule, now)
            registry_vested = self.registry.get_vested_amount(token, self.address)

        client = self.token_clients.get(token)
        return AccountStatus(
            token=token,
            schedule=schedule,
            eligible=eligible,
            ledger=ledger,
            vested=vested,
            claimable=claimable,
            remaining_deposit=remaining_deposit(ledger),
            allowance=client.allowance(self.address, self.authority.address) if client else None,
            balance=client.balance_of(self.address) if client else None,
            progress=progress,
            registry_vested=registry_vested,
        )

    def tokens(self) -> list:
        """Every token the registry knows, with its configured application if any."""
        result = []
        for address in self.registry.get_all_tokens():
            client = self.token_clients.get(address)
            result.append(TokenInfo(address, client.id if client else None, self.registry.has_active_schedule(address)))
        return result
