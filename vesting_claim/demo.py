# Drive the claim pipeline from a terminal against configured networks
import argparse
import logging
import os
import sys

import algokit_utils

from .config import load_config
from .contracts import PromptingSigner
from .errors import ClaimError, ConfigError
from .orchestrator import ClaimOrchestrator
from .vesting import ScheduleRequest, format_units, parse_units

logger = logging.getLogger(__name__)


def confirm_signature(txn_group, indexes) -> bool:
    for i in indexes:
        txn = txn_group[i]
        print(f"sign {txn.type} from {txn.sender} to app {getattr(txn, 'index', '-')}?")
    return input("[y/N] ").strip().lower() in ("y", "yes")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vesting-claim", description="Claim vested tokens through an attested claim authority")
    parser.add_argument("--config", help="YAML file with default settings")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("status", help="show schedule, vested and claimable amounts")
    p.add_argument("--token", help="token application address, defaults to TOKEN_APP_ID")

    sub.add_parser("tokens", help="list tokens known to the vesting registry")

    for name in ("claim", "deposit", "withdraw"):
        p = sub.add_parser(name)
        p.add_argument("amount", help="amount in display units, e.g. 12.5")
        p.add_argument("--token", help="token application address, defaults to TOKEN_APP_ID")

    p = sub.add_parser("create-schedule")
    p.add_argument("total_amount")
    p.add_argument("--cliff-days", default="0")
    p.add_argument("--vesting-days", required=True)
    p.add_argument("--eligible", required=True, help="comma separated addresses")
    p.add_argument("--start-time", type=int)
    return parser


def print_status(status, decimals):
    print(f"token:             {status.token}")
    if status.schedule is None:
        print("schedule:          none")
    else:
        print(f"schedule:          {format_units(status.schedule.total_amount, decimals)} "
              f"from {status.schedule.start_time}, cliff ends {status.schedule.cliff_end}, "
              f"ends {status.schedule.end_time}")
        print(f"progress:          {status.progress:.2f}%")
    print(f"eligible:          {status.eligible}")
    print(f"vested:            {format_units(status.vested, decimals)}")
    print(f"registry vested:   {format_units(status.registry_vested, decimals)}")
    print(f"claimed:           {format_units(status.ledger.claimed, decimals)}")
    print(f"claimable:         {format_units(status.claimable, decimals)}")
    print(f"remaining deposit: {format_units(status.remaining_deposit, decimals)}")
    if status.allowance is None:
        print("allowance:         unknown, no token application configured")
    else:
        print(f"allowance:         {format_units(status.allowance, decimals)}")
        print(f"balance:           {format_units(status.balance, decimals)}")


def print_tokens(tokens):
    for info in tokens:
        app = info.app_id if info.app_id is not None else "-"
        print(f"{info.address}  app {app}  {'active' if info.active else 'inactive'}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        config = load_config(args.config)
        mnemonic = os.environ.get("CLAIMANT_MNEMONIC")
        if not mnemonic:
            raise ConfigError("missing required setting CLAIMANT_MNEMONIC")
    except ClaimError as exc:
        print(f"{exc.kind}: {exc.message}", file=sys.stderr)
        return 2

    account = algokit_utils.get_account_from_mnemonic(mnemonic)
    signer = PromptingSigner(account.signer, confirm_signature)
    orchestrator = ClaimOrchestrator.from_config(config, account.address, signer)
    decimals = config.token_decimals

    try:
        if args.command == "status":
            print_status(orchestrator.status(args.token), decimals)
            return 0

        if args.command == "tokens":
            print_tokens(orchestrator.tokens())
            return 0

        if args.command == "create-schedule":
            request = ScheduleRequest.from_form(
                token=orchestrator.token.address,
                total_amount=args.total_amount,
                cliff_days=args.cliff_days,
                vesting_days=args.vesting_days,
                eligible_addresses=args.eligible,
                decimals=decimals,
                start_time=args.start_time,
            )
            outcome = orchestrator.create_schedule(request)
        else:
            amount = parse_units(args.amount, decimals)
            operation = getattr(orchestrator, args.command)
            outcome = operation(args.token, amount)
    except ClaimError as exc:
        print(f"{exc.kind}: {exc.message}", file=sys.stderr)
        return 1

    if outcome.ok:
        print(f"{outcome.operation} confirmed: {outcome.tx_id}")
        if outcome.attestation_id:
            print(f"attestation {outcome.attestation_id}")
        return 0
    print(f"{outcome.operation} {outcome.state}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
