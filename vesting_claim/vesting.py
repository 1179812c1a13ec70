"""Vesting schedule math.

All amounts are integers in the token's smallest unit. Time is unix seconds.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from algosdk import encoding

from .errors import EncodingError, InvalidAmount

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class VestingSchedule:
    token: str
    total_amount: int
    start_time: int
    cliff_duration: int
    vesting_duration: int
    eligible_addresses: frozenset = field(default_factory=frozenset)
    creator: Optional[str] = None
    active: bool = True

    def __post_init__(self):
        if self.total_amount <= 0:
            raise InvalidAmount(f"total amount must be positive, got {self.total_amount}")
        if self.cliff_duration < 0 or self.vesting_duration <= 0:
            raise InvalidAmount("durations must be non-negative and vesting must be longer than zero")
        if self.cliff_duration > self.vesting_duration:
            raise InvalidAmount(
                f"cliff ({self.cliff_duration}s) is longer than vesting ({self.vesting_duration}s)"
            )

    @property
    def cliff_end(self) -> int:
        return self.start_time + self.cliff_duration

    @property
    def end_time(self) -> int:
        return self.start_time + self.cliff_duration + self.vesting_duration

    @classmethod
    def from_abi(cls, values, eligible_addresses: Iterable[str] = ()):
        # (address,uint256,uint64,uint64,uint64,address,bool) as returned by get_vesting_schedule
        token, total_amount, start_time, cliff_duration, vesting_duration, creator, active = values
        return cls(
            token=token,
            total_amount=total_amount,
            start_time=start_time,
            cliff_duration=cliff_duration,
            vesting_duration=vesting_duration,
            eligible_addresses=frozenset(eligible_addresses),
            creator=creator,
            active=active,
        )


@dataclass(frozen=True)
class ClaimLedgerEntry:
    deposited: int = 0
    claimed: int = 0


def vested_amount(schedule: VestingSchedule, now: int) -> int:
    if now < schedule.start_time:
        return 0
    # nothing vests until the cliff has elapsed
    if now < schedule.cliff_end:
        return 0
    if now >= schedule.end_time:
        return schedule.total_amount

    elapsed = now - schedule.cliff_end
    return schedule.total_amount * elapsed // schedule.vesting_duration


def claimable_amount(entry: ClaimLedgerEntry, schedule: VestingSchedule, now: int) -> int:
    return max(0, vested_amount(schedule, now) - entry.claimed)


def remaining_deposit(entry: ClaimLedgerEntry) -> int:
    return max(0, entry.deposited - entry.claimed)


def vesting_progress(schedule: VestingSchedule, now: int) -> Decimal:
    """Percentage of the linear segment that has elapsed, 0 to 100."""
    if not schedule.active or now < schedule.cliff_end:
        return Decimal(0)
    if now >= schedule.end_time:
        return Decimal(100)
    return Decimal(now - schedule.cliff_end) * 100 / Decimal(schedule.vesting_duration)


def days_to_seconds(days) -> int:
    try:
        value = int(days)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"{days!r} is not a whole number of days") from exc
    if value < 0:
        raise EncodingError(f"duration cannot be negative: {days!r}")
    return value * SECONDS_PER_DAY


def parse_units(text: str, decimals: int) -> int:
    """Convert a decimal display string to an integer amount of base units."""
    try:
        value = Decimal(str(text).strip())
    except InvalidOperation as exc:
        raise EncodingError(f"{text!r} is not a decimal amount") from exc
    if not value.is_finite() or value < 0:
        raise EncodingError(f"{text!r} is not a valid amount")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise EncodingError(f"{text!r} has more than {decimals} decimal places")
    return int(scaled)


def format_units(amount: int, decimals: int) -> str:
    whole, fraction = divmod(amount, 10 ** decimals)
    if not decimals or not fraction:
        return str(whole)
    return f"{whole}.{fraction:0{decimals}d}".rstrip("0")


def parse_address_list(text: str) -> tuple:
    addresses = tuple(part.strip() for part in text.split(",") if part.strip())
    for address in addresses:
        if not encoding.is_valid_address(address):
            raise EncodingError(f"{address!r} is not a valid address")
    return addresses


@dataclass(frozen=True)
class ScheduleRequest:
    """Validated input for create_vesting_schedule."""

    token: str
    total_amount: int
    start_time: int
    cliff_duration: int
    vesting_duration: int
    eligible_addresses: tuple

    def __post_init__(self):
        if not encoding.is_valid_address(self.token):
            raise EncodingError(f"{self.token!r} is not a valid token address")
        if not self.eligible_addresses:
            raise EncodingError("at least one eligible address is required")
        # same invariants as an on-chain schedule
        self.as_schedule()

    def as_schedule(self, creator: Optional[str] = None) -> VestingSchedule:
        return VestingSchedule(
            token=self.token,
            total_amount=self.total_amount,
            start_time=self.start_time,
            cliff_duration=self.cliff_duration,
            vesting_duration=self.vesting_duration,
            eligible_addresses=frozenset(self.eligible_addresses),
            creator=creator,
        )

    def abi_args(self) -> list:
        return [
            self.token,
            self.total_amount,
            self.start_time,
            self.cliff_duration,
            self.vesting_duration,
            list(self.eligible_addresses),
        ]

    @classmethod
    def from_form(
        cls,
        token: str,
        total_amount: str,
        cliff_days: str,
        vesting_days: str,
        eligible_addresses: str,
        decimals: int,
        start_time: Optional[int] = None,
    ):
        if not token or not total_amount or not eligible_addresses:
            raise EncodingError("token, total amount and eligible addresses are required")
        return cls(
            token=token.strip(),
            total_amount=parse_units(total_amount, decimals),
            start_time=int(time.time()) if start_time is None else start_time,
            cliff_duration=days_to_seconds(cliff_days or 0),
            vesting_duration=days_to_seconds(vesting_days),
            eligible_addresses=parse_address_list(eligible_addresses),
        )
