"""
Bountiful: bounty records on a UTXO ledger.

A bounty is one ledger box guarded by a script and identified by a singleton
control token. Every change to a bounty consumes its box and produces a
successor; withdrawal and refund consume it for good.

Architecture
────────────

    ┌──────────────────────────────────────────────────────────────────────┐
    │  orchestrator.py   fetch, build, fund, sign, submit, track           │
    ├──────────────────────────────────────────────────────────────────────┤
    │  builder.py        successor record + exact outputs per action       │
    │  validator.py      the script's predicates, re-run by the ledger     │
    │  distribution.py   splitting collected platform fees                 │
    ├──────────────────────────────────────────────────────────────────────┤
    │  codec.py          record <-> register encoding                      │
    │  content.py        roots + payload blob                              │
    │  fees.py           platform fee, winner amount, dust                 │
    │  versions.py       contract versions and script identities           │
    ├──────────────────────────────────────────────────────────────────────┤
    │  ledger.py         boxes, transactions, collaborator protocols       │
    │  memory.py         in-memory ledger, wallet, assembler               │
    └──────────────────────────────────────────────────────────────────────┘
"""

__version__ = "0.3.1"


def __getattr__(name):
    """Lazy import of the public surface on first access."""

    if name in ("BountyRecord", "SubmissionStats", "ScriptConstants"):
        from bountiful import records
        return getattr(records, name)

    if name in ("ContractVersion", "VersionRules", "ScriptIdentity", "MintGuard",
                "LATEST_VERSION", "rules_for"):
        from bountiful import versions
        return getattr(versions, name)

    if name in ("BountyError", "InvalidPrecondition", "DustOutput", "RecordNotFound",
                "StaleRecord", "EncodingError", "LedgerRejected", "ConfigError", "Result"):
        from bountiful import errors
        return getattr(errors, name)

    if name in ("ActionKind", "Verdict", "validate_transition", "validate_creation"):
        from bountiful import validator
        return getattr(validator, name)

    if name in ("TransitionPlan", "build_mint", "build_bounty", "build_submit_solution",
                "build_judge_submission", "build_withdraw_reward", "build_refund_bounty",
                "build_add_funds", "build_extend_deadline", "build_update_metadata"):
        from bountiful import builder
        return getattr(builder, name)

    if name in ("BountyLifecycle", "ActionOutcome"):
        from bountiful import orchestrator
        return getattr(orchestrator, name)

    if name in ("InMemoryLedger", "LocalWallet", "SimpleAssembler"):
        from bountiful import memory
        return getattr(memory, name)

    if name in ("BountyMetadata",):
        from bountiful import metadata
        return getattr(metadata, name)

    if name in ("FeeSchedule", "FeeRecipient", "FeeDistributionScript", "build_fee_distribution"):
        from bountiful import distribution
        return getattr(distribution, name)

    raise AttributeError(f"module 'bountiful' has no attribute {name!r}")
