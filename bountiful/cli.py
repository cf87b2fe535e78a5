#!/usr/bin/env python3
"""
Bountiful CLI

Command-line access to the pure parts of the bounty stack and to a local
in-memory simulation of a whole bounty life cycle.

Usage:
    bountiful <command> [subcommand] [options]

Commands:
    fees        Withdrawal split and refund amounts
    content     Encode and decode content blobs
    record      Decode bounty boxes, identify contract versions
    address     Derive and inspect addresses
    config      Inspect the effective configuration
    simulate    Run a bounty end to end on an in-memory ledger
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from bountiful import __version__
from bountiful import content as content_model
from bountiful.codec import decode_record
from bountiful.config import ConfigManager, get_config_manager
from bountiful.content import ContentRoots
from bountiful.core import hex_or_bytes
from bountiful.errors import BountyError
from bountiful.fees import refund_amount, withdrawal_split
from bountiful.keys import P2PK_TYPE, P2SH_TYPE, KeyPair, Network, decode_address, encode_address, p2pk_address
from bountiful.ledger import LedgerBox, Token
from bountiful.memory import InMemoryLedger, LocalWallet, SimpleAssembler
from bountiful.metadata import BountyMetadata
from bountiful.observability import BountyLayer, configure_logging, get_logger
from bountiful.orchestrator import BountyLifecycle
from bountiful.versions import ContractVersion, ScriptIdentity, rules_for, version_from_template_hash

logger = get_logger("cli", BountyLayer.CLI)


class OutputFormat(Enum):
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """Usage problem detected after argument parsing; carries the exit status."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


_CELL_WIDTH = 40


def _table(data: Any) -> str:
    if isinstance(data, dict):
        return "\n".join(f"{key}: {value}" for key, value in data.items())
    if not (isinstance(data, list) and data and isinstance(data[0], dict)):
        return str(data)
    columns = list(data[0])
    cells = [[str(item.get(col, ""))[:_CELL_WIDTH] for col in columns] for item in data]
    widths = [max([len(col)] + [len(row[n]) for row in cells]) for n, col in enumerate(columns)]

    def line(values: List[str]) -> str:
        return " | ".join(v.ljust(w) for v, w in zip(values, widths))

    return "\n".join([line(columns), "-+-".join("-" * w for w in widths)] + [line(row) for row in cells])


_RENDERERS = {
    OutputFormat.JSON: lambda data: json.dumps(data, indent=2, default=str),
    OutputFormat.YAML: lambda data: yaml.safe_dump(data, default_flow_style=False, sort_keys=False),
    OutputFormat.TABLE: _table,
    OutputFormat.TEXT: str,
}


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    return _RENDERERS[fmt](data)


def _version(value: str) -> ContractVersion:
    try:
        return ContractVersion.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _hex(value: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not a hex string: {value!r}") from e


class BountifulCLI:
    """Argument parser plus one ``_handle_<command>_<subcommand>`` method per leaf command."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="bountiful",
            description="Bounty life-cycle toolkit",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"bountiful {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument("--config", "-c", help="Configuration file (YAML)")
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Only log errors and print nothing on failure",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", metavar="<command>")
        self._register_commands()

    def _register_commands(self) -> None:
        self._register_fees_commands()
        self._register_content_commands()
        self._register_record_commands()
        self._register_address_commands()
        self._register_config_commands()
        self._register_simulate_command()

    def _register_fees_commands(self) -> None:
        fees = self.subparsers.add_parser("fees", help="Fee arithmetic")
        fees_sub = fees.add_subparsers(dest="subcommand")

        split = fees_sub.add_parser("split", help="Withdrawal split of a reward")
        split.add_argument("--reward", "-r", type=int, required=True, help="Reward amount")
        split.add_argument("--rate", type=int, default=None, help="Dev fee rate (10 = 1%%)")
        split.add_argument("--contract-version", type=_version, default=None, help="Contract version")

        refund = fees_sub.add_parser("refund", help="Amount a refund pays the creator")
        refund.add_argument("--reward", "-r", type=int, required=True, help="Reward amount")
        refund.add_argument("--value", type=int, required=True, help="Bounty box value")
        refund.add_argument("--contract-version", type=_version, default=None, help="Contract version")

    def _register_content_commands(self) -> None:
        content = self.subparsers.add_parser("content", help="Content blobs")
        content_sub = content.add_subparsers(dest="subcommand")

        decode = content_sub.add_parser("decode", help="Split a blob into roots and payload")
        decode.add_argument("blob", type=_hex, help="Content blob (hex)")

        encode = content_sub.add_parser("encode", help="Build a blob")
        encode.add_argument("--payload", "-p", default="", help="Payload text")
        encode.add_argument("--submissions-root", type=_hex, default=None)
        encode.add_argument("--judgments-root", type=_hex, default=None)
        encode.add_argument("--metadata-root", type=_hex, default=None)

    def _register_record_commands(self) -> None:
        record = self.subparsers.add_parser("record", help="Bounty records")
        record_sub = record.add_subparsers(dest="subcommand")

        decode = record_sub.add_parser("decode", help="Decode a bounty box described in a JSON file")
        decode.add_argument("path", help="Box JSON (value, tokens, registers, script)")

        record_sub.add_parser("versions", help="List contract versions and template hashes")

        identify = record_sub.add_parser("identify", help="Contract version of a template hash")
        identify.add_argument("template_hash", help="Template hash (hex)")

    def _register_address_commands(self) -> None:
        address = self.subparsers.add_parser("address", help="Addresses")
        address_sub = address.add_subparsers(dest="subcommand")

        p2pk = address_sub.add_parser("p2pk", help="Address of a public key")
        p2pk.add_argument("public_key", type=_hex, help="Compressed public key (hex)")
        p2pk.add_argument("--network", "-n", choices=["mainnet", "testnet"], default=None)

        decode = address_sub.add_parser("decode", help="Inspect an address")
        decode.add_argument("address")

        bounty = address_sub.add_parser("bounty", help="Script address of a bounty")
        bounty.add_argument("--creator", type=_hex, required=True, help="Creator public key (hex)")
        bounty.add_argument("--token", type=_hex, required=True, help="Control token id (hex)")
        bounty.add_argument("--dev-fee-address", default=None)
        bounty.add_argument("--rate", type=int, default=None)
        bounty.add_argument("--contract-version", type=_version, default=None)
        bounty.add_argument("--network", "-n", choices=["mainnet", "testnet"], default=None)

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Inspect the effective configuration")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Print one setting")
        get.add_argument("path", help="Config path (e.g., fees.dev_fee_rate)")

        config_sub.add_parser("show", help="Print every setting")
        config_sub.add_parser("validate", help="Report invalid settings")
        config_sub.add_parser("schema", help="Describe every setting and its variable")

    def _register_simulate_command(self) -> None:
        simulate = self.subparsers.add_parser("simulate", help="Run a bounty on an in-memory ledger")
        simulate.add_argument("--reward", "-r", type=int, default=50_000_000, help="Reward amount")
        simulate.add_argument("--rate", type=int, default=None, help="Dev fee rate (10 = 1%%)")
        simulate.add_argument("--contract-version", type=_version, default=None)
        simulate.add_argument(
            "--outcome",
            choices=["withdraw", "refund"],
            default="withdraw",
            help="Pay the winner, or let the deadline pass without submissions",
        )

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self, args: Optional[List[str]] = None) -> int:
        """Parse ``args``, run the selected handler and print its result.

        Returns the process exit status. Bounty errors print their code.
        """
        parsed = self.parser.parse_args(args)
        if not parsed.command:
            self.parser.print_help()
            return 0

        status, problem = 0, ""
        try:
            self._configure(parsed)
            result = self._dispatch(parsed)
        except CLIError as e:
            status, problem = e.exit_code, f"Error: {e}"
        except BountyError as e:
            status, problem = 1, f"Error [{e.code}]: {e.message}"
        except (OSError, ValueError) as e:
            status, problem = 1, f"Error: {e}"
        else:
            if result is not None:
                print(format_output(result, OutputFormat(parsed.format)))

        if problem and not parsed.quiet:
            print(problem, file=sys.stderr)
        return status

    def _configure(self, args: argparse.Namespace) -> None:
        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        obs = mgr.config.observability
        level = "error" if args.quiet else obs.log_level.get()
        configure_logging(level, obs.log_format.get())

    def _dispatch(self, args: argparse.Namespace) -> Any:
        words = [args.command] + ([args.subcommand] if getattr(args, "subcommand", None) else [])
        handler = getattr(self, "_handle_" + "_".join(words), None)
        if handler is None:
            raise CLIError(f"Unknown command: {' '.join(words)}", exit_code=2)
        logger.debug("Dispatching command", command=" ".join(words))
        return handler(args)

    @staticmethod
    def _network(args: argparse.Namespace) -> Network:
        name = getattr(args, "network", None)
        return Network(name) if name else get_config_manager().config.ledger_network

    @staticmethod
    def _contract_version(args: argparse.Namespace) -> ContractVersion:
        return args.contract_version or get_config_manager().config.contract_version

    # Fees
    def _handle_fees_split(self, args: argparse.Namespace) -> Any:
        config = get_config_manager().config
        rules = rules_for(self._contract_version(args))
        rate = args.rate if args.rate is not None else config.fees.dev_fee_rate.get()
        split = withdrawal_split(
            args.reward,
            rate,
            miner_fee=rules.miner_fee,
            denominator=rules.fee_denominator,
            min_box_value=config.fees.min_box_value.get(),
        )
        result = split.to_dict()
        result["platform_output"] = split.has_platform_output
        return result

    def _handle_fees_refund(self, args: argparse.Namespace) -> Any:
        version = self._contract_version(args)
        if args.value < args.reward:
            raise CLIError("box value cannot be below the reward amount")
        amount = refund_amount(args.reward, args.value, full_value=rules_for(version).refund_full_value)
        return {"version": version.value, "refund": amount}

    # Content
    def _handle_content_decode(self, args: argparse.Namespace) -> Any:
        decoded = content_model.decode(args.blob)
        payload = decoded.payload
        try:
            text: Any = payload.decode("utf-8")
        except UnicodeDecodeError:
            text = payload.hex()
        return {
            "submissions_root": decoded.roots.submissions.hex(),
            "judgments_root": decoded.roots.judgments.hex(),
            "metadata_root": decoded.roots.metadata.hex(),
            "payload": text,
        }

    def _handle_content_encode(self, args: argparse.Namespace) -> Any:
        defaults = ContentRoots()
        roots = ContentRoots(
            submissions=args.submissions_root or defaults.submissions,
            judgments=args.judgments_root or defaults.judgments,
            metadata=args.metadata_root or defaults.metadata,
        )
        return {"blob": content_model.encode(roots, args.payload.encode("utf-8")).hex()}

    # Records
    def _handle_record_decode(self, args: argparse.Namespace) -> Any:
        data = json.loads(Path(args.path).read_text(encoding="utf-8"))
        box = _box_from_dict(data)
        return decode_record(box).to_dict()

    def _handle_record_versions(self, args: argparse.Namespace) -> Any:
        rows = []
        for v in ContractVersion:
            rules = rules_for(v)
            rows.append({
                "version": v.value,
                "template_hash": v.template_hash(),
                "refund": "value" if rules.refund_full_value else "reward",
                "dispute_period": rules.dispute_period,
            })
        return rows

    def _handle_record_identify(self, args: argparse.Namespace) -> Any:
        version = version_from_template_hash(args.template_hash.lower())
        if version is None:
            raise CLIError(f"unknown template hash {args.template_hash}", exit_code=2)
        return {"template_hash": args.template_hash, "version": version.value}

    # Addresses
    def _handle_address_p2pk(self, args: argparse.Namespace) -> Any:
        return {"address": p2pk_address(args.public_key, self._network(args))}

    def _handle_address_decode(self, args: argparse.Namespace) -> Any:
        network, address_type, body = decode_address(args.address)
        return {
            "network": network.value,
            "type": {P2PK_TYPE: "p2pk", P2SH_TYPE: "p2sh"}.get(address_type, hex(address_type)),
            "content": body.hex(),
            "canonical": encode_address(network, address_type, body) == args.address,
        }

    def _handle_address_bounty(self, args: argparse.Namespace) -> Any:
        config = get_config_manager().config
        script = ScriptIdentity(
            creator_pub_key=args.creator,
            dev_fee_address=args.dev_fee_address or config.dev_fee_address(),
            dev_fee_rate=args.rate if args.rate is not None else config.fees.dev_fee_rate.get(),
            token_id=args.token,
            version=self._contract_version(args),
        )
        result = script.to_dict()
        result["address"] = script.address(self._network(args))
        return result

    # Config
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        return {"valid": not errors, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()

    # Simulation
    def _handle_simulate(self, args: argparse.Namespace) -> Any:
        return simulate(
            reward=args.reward,
            rate=args.rate,
            version=self._contract_version(args),
            outcome=args.outcome,
        )


def _box_from_dict(data: Dict[str, Any]) -> LedgerBox:
    script = data.get("script")
    if not isinstance(script, dict):
        raise CLIError("box JSON needs a 'script' object")
    try:
        identity = ScriptIdentity(
            creator_pub_key=hex_or_bytes(script["creator_pub_key"]),
            dev_fee_address=str(script["dev_fee_address"]),
            dev_fee_rate=int(script["dev_fee_rate"]),
            token_id=hex_or_bytes(script["token_id"]),
            version=ContractVersion.parse(script["version"]),
        )
        return LedgerBox(
            box_id=str(data.get("box_id", "")),
            value=int(data["value"]),
            address=str(data.get("address", "")),
            tokens=tuple(
                Token(hex_or_bytes(t["token_id"]), int(t["amount"])) for t in data.get("tokens", [])
            ),
            registers={k: hex_or_bytes(v) for k, v in data.get("registers", {}).items()},
            script=identity,
        )
    except (KeyError, TypeError) as e:
        raise CLIError(f"malformed box JSON: {e}") from e


def simulate(
    *,
    reward: int,
    rate: Optional[int],
    version: ContractVersion,
    outcome: str = "withdraw",
) -> Dict[str, Any]:
    """Run one bounty from mint to its terminal transition on a fresh ledger."""
    config = get_config_manager().config
    network = config.ledger_network
    ledger = InMemoryLedger(height=100, min_box_value=config.fees.min_box_value.get())
    creator = KeyPair.generate()
    solver = KeyPair.generate()
    platform = KeyPair.generate()
    dev_fee_address = platform.address(network)
    schedule = config.fee_schedule()
    if schedule is not None:
        dev_fee_address = ledger.register_script(
            schedule.script(min_distribution=config.distribution.min_distribution.get()), network,
        )

    funding = reward * 2 + 10 * config.fees.carrying_value.get()
    ledger.fund(creator.address(network), funding)
    ledger.fund(solver.address(network), 10 * config.fees.tx_fee.get())

    assembler = SimpleAssembler(config.fees.min_box_value.get())
    as_creator = BountyLifecycle(ledger, LocalWallet(creator, ledger, network), assembler, config)
    as_solver = BountyLifecycle(ledger, LocalWallet(solver, ledger, network), assembler, config, as_creator.store)

    steps: List[Dict[str, Any]] = []

    def step(result):
        steps.append({
            "action": result.action,
            "ok": result.ok,
            "tx_id": result.tx_id,
            "height": ledger.current_height(),
            "error": result.error.message if result.error else None,
        })
        if not result.ok:
            raise CLIError(f"{result.action} failed: {result.error.message}")
        return result

    created = step(as_creator.create_bounty(
        reward_amount=reward,
        deadline=ledger.current_height() + 100,
        min_submissions=1,
        metadata=BountyMetadata(title="Simulated bounty", description="In-memory life cycle"),
        dev_fee_address=dev_fee_address,
        dev_fee_rate=rate,
        version=version,
    ))
    token_id = created.token_id

    if outcome == "withdraw":
        step(as_solver.submit_solution(token_id, "simulated solution"))
        judged_at = ledger.current_height()
        step(as_creator.judge_submission(token_id, 0, True, winner_address=solver.address(network)))
        ledger.advance(rules_for(version).dispute_period)
        step(as_solver.withdraw_reward(
            token_id, winner_address=solver.address(network), judgment_height=judged_at,
        ))
    else:
        ledger.set_height(created.record.deadline + 1)
        step(as_solver.refund_bounty(token_id))

    return {
        "token_id": token_id.hex(),
        "version": version.value,
        "outcome": outcome,
        "steps": steps,
        "balances": {
            "creator": ledger.balance(creator.address(network)),
            "solver": ledger.balance(solver.address(network)),
            "platform": ledger.balance(dev_fee_address),
        },
    }


def main() -> int:
    """CLI entry point."""
    ConfigManager.reset()
    cli = BountifulCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
