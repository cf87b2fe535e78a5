import logging
import os
import pathlib
import sys
from dataclasses import replace

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import bountiful`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from bountiful import content as content_model  # noqa: E402
from bountiful.config import BountifulConfig, ConfigManager  # noqa: E402
from bountiful.content import ContentRoots  # noqa: E402
from bountiful.fees import SAFE_MIN_BOX_VALUE  # noqa: E402
from bountiful.keys import KeyPair  # noqa: E402
from bountiful.memory import InMemoryLedger, LocalWallet, SimpleAssembler  # noqa: E402
from bountiful.metadata import BountyMetadata  # noqa: E402
from bountiful.orchestrator import BountyLifecycle  # noqa: E402
from bountiful.records import BountyRecord, ScriptConstants, SubmissionStats  # noqa: E402
from bountiful.versions import LATEST_VERSION  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless BOUNTIFUL_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('BOUNTIFUL_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set BOUNTIFUL_RUN_SLOW=1 to enable'))


# -----------------------------------------------------------------------------
# Keys and records
# -----------------------------------------------------------------------------

CREATOR = KeyPair.from_secret(0xC0FFEE)
SOLVER = KeyPair.from_secret(0x50_1E5)
PLATFORM = KeyPair.from_secret(0xFEE5)
STRANGER = KeyPair.from_secret(0xBAD)

TOKEN_ID = bytes(range(32))
DEV_FEE_RATE = 10


def sample_metadata(**changes) -> BountyMetadata:
    md = BountyMetadata(title="Fix the flaky parser", description="Reproducible build needed", version=1)
    return replace(md, **changes) if changes else md


def make_record(**overrides) -> BountyRecord:
    """An open, well-formed record: deadline 1000, reward 10_000_000."""
    md = sample_metadata()
    reward = overrides.pop("reward_amount", 10_000_000)
    fields = dict(
        token_id=TOKEN_ID,
        value=reward + SAFE_MIN_BOX_VALUE,
        deadline=1000,
        min_submissions=2,
        stats=SubmissionStats(),
        reward_amount=reward,
        creator_pub_key=CREATOR.public_key,
        content=content_model.encode(ContentRoots(metadata=md.digest()), md.to_payload()),
        constants=ScriptConstants(PLATFORM.address(), DEV_FEE_RATE),
        version=LATEST_VERSION,
    )
    fields.update(overrides)
    return BountyRecord(**fields)


@pytest.fixture
def record() -> BountyRecord:
    return make_record()


# -----------------------------------------------------------------------------
# Configuration and the in-memory stack
# -----------------------------------------------------------------------------

@pytest.fixture
def config(monkeypatch) -> BountifulConfig:
    """A fresh configuration that ignores BOUNTIFUL_* variables from the shell."""
    for name in list(os.environ):
        if name.startswith("BOUNTIFUL_"):
            monkeypatch.delenv(name, raising=False)
    ConfigManager.reset()
    cfg = ConfigManager().config
    cfg.fees.dev_fee_address.set(PLATFORM.address())
    cfg.fees.dev_fee_rate.set(DEV_FEE_RATE)
    yield cfg
    ConfigManager.reset()


class Sim:
    """An in-memory ledger with a creator and a solver, each with a lifecycle."""

    def __init__(self, config: BountifulConfig, height: int = 100):
        self.config = config
        self.ledger = InMemoryLedger(height=height)
        self.ledger.fund(CREATOR.address(), 200_000_000)
        self.ledger.fund(SOLVER.address(), 20_000_000)
        assembler = SimpleAssembler()
        self.creator = BountyLifecycle(self.ledger, LocalWallet(CREATOR, self.ledger), assembler, config)
        self.solver = BountyLifecycle(
            self.ledger, LocalWallet(SOLVER, self.ledger), assembler, config, self.creator.store,
        )

    def create(self, *, reward_amount: int = 10_000_000, deadline: int = 1000, min_submissions: int = 1, **kwargs):
        outcome = self.creator.create_bounty(
            reward_amount=reward_amount,
            deadline=deadline,
            min_submissions=min_submissions,
            metadata=kwargs.pop("metadata", sample_metadata()),
            **kwargs,
        )
        assert outcome.ok, outcome.error and outcome.error.to_dict()
        return outcome


@pytest.fixture
def sim(config) -> Sim:
    return Sim(config)


@pytest.fixture
def restore_logging():
    """Undo configure_logging so handlers never outlive a captured stream."""
    root = logging.getLogger("bountiful")
    saved = (list(root.handlers), root.level, root.propagate)
    yield root
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    root.propagate = saved[2]
