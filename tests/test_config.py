"""
Configuration tests: defaults, environment binding, files, validation.

Run with: pytest tests/test_config.py -v
"""

import yaml
import pytest

from bountiful.config import ConfigManager, ValidationError, get_config
from bountiful.distribution import FeeSchedule
from bountiful.errors import ConfigError
from bountiful.fees import MIN_BOX_VALUE, RECOMMENDED_TX_FEE, SAFE_MIN_BOX_VALUE
from bountiful.keys import Network
from bountiful.versions import LATEST_VERSION, ContractVersion

from conftest import CREATOR, PLATFORM, SOLVER


class TestDefaults:

    def test_fee_defaults(self, config):
        assert config.fees.min_box_value.get() == MIN_BOX_VALUE
        assert config.fees.carrying_value.get() == SAFE_MIN_BOX_VALUE
        assert config.fees.tx_fee.get() == RECOMMENDED_TX_FEE
        assert config.fees.dev_fee_rate.get() == 10

    def test_lifecycle_defaults(self, config):
        assert config.contract_version == LATEST_VERSION
        assert config.ledger_network == Network.MAINNET
        assert config.lifecycle.await_confirmation.get() is True

    def test_get_config_is_the_singleton(self, config):
        assert get_config() is config


class TestEnvironment:

    def test_env_overrides_value(self, config, monkeypatch):
        monkeypatch.setenv("BOUNTIFUL_DEV_FEE_RATE", "25")
        assert config.fees.dev_fee_rate.get() == 25

    def test_env_bool(self, config, monkeypatch):
        monkeypatch.setenv("BOUNTIFUL_AWAIT_CONFIRMATION", "no")
        assert config.lifecycle.await_confirmation.get() is False

    def test_env_list(self, config, monkeypatch):
        monkeypatch.setenv("BOUNTIFUL_FEE_RECIPIENTS", f"{CREATOR.address()}:50, {SOLVER.address()}:50")
        assert config.fee_schedule() == FeeSchedule.parse([(CREATOR.address(), 50), (SOLVER.address(), 50)])

    def test_env_garbage(self, config, monkeypatch):
        monkeypatch.setenv("BOUNTIFUL_TX_FEE", "a lot")
        with pytest.raises(ValidationError):
            config.fees.tx_fee.get()
        assert any(e.startswith("fees.tx_fee") for e in ConfigManager().validate())


class TestValues:

    def test_validator_refuses(self, config):
        with pytest.raises(ValidationError):
            config.fees.dev_fee_rate.set(1000)
        with pytest.raises(ValidationError):
            config.fees.dev_fee_address.set("not an address")
        with pytest.raises(ValidationError):
            config.lifecycle.default_version.set("v9_9")

    def test_on_change(self, config):
        seen = []
        config.fees.tx_fee.on_change(lambda old, new: seen.append((old, new)))
        config.fees.tx_fee.set(2_000_000)
        assert seen == [(None, 2_000_000)]

    def test_reset_restores_default(self, config):
        config.fees.tx_fee.set(2_000_000)
        config.fees.tx_fee.reset()
        assert config.fees.tx_fee.get() == RECOMMENDED_TX_FEE

    def test_contract_version(self, config):
        config.lifecycle.default_version.set("v1_0")
        assert config.contract_version == ContractVersion.V1_0


class TestDevFeeAddress:

    def test_explicit_address_wins(self, config):
        assert config.dev_fee_address() == PLATFORM.address()

    def test_falls_back_to_distribution_script(self, config):
        config.fees.dev_fee_address.reset()
        config.distribution.recipients.set([f"{CREATOR.address()}:50", f"{SOLVER.address()}:50"])
        expected = config.fee_schedule().script().address()
        assert config.dev_fee_address() == expected

    def test_nothing_configured(self, config):
        config.fees.dev_fee_address.reset()
        with pytest.raises(ConfigError):
            config.dev_fee_address()


class TestManager:

    def test_set_and_get_by_path(self, config):
        manager = ConfigManager()
        manager.set("fees.dev_fee_rate", 20)
        assert manager.get("fees.dev_fee_rate") == 20
        assert config.fees.dev_fee_rate.get() == 20

    def test_invalid_path(self, config):
        with pytest.raises(ConfigError):
            ConfigManager().get("fees.nope")
        with pytest.raises(ConfigError):
            ConfigManager().set("fees", 1)

    def test_load_yaml(self, config, tmp_path):
        path = tmp_path / "bountiful.yaml"
        path.write_text(yaml.safe_dump({
            "network": {"network": "testnet"},
            "fees": {"tx_fee": 1_500_000, "unknown_key": 1},
            "lifecycle": {"default_version": "v1_0"},
        }))
        manager = ConfigManager()
        manager.load_from_file(path)
        assert config.ledger_network == Network.TESTNET
        assert config.fees.tx_fee.get() == 1_500_000
        assert config.contract_version == ContractVersion.V1_0
        assert manager.loaded_paths == [path]

    def test_missing_file(self, config, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigManager().load_from_file(tmp_path / "absent.yaml")

    def test_file_must_be_a_mapping(self, config, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError, match="mapping"):
            ConfigManager().load_from_file(path)

    def test_invalid_value_in_file(self, config, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"fees": {"dev_fee_rate": 5000}}))
        with pytest.raises(ValidationError):
            ConfigManager().load_from_file(path)

    def test_reload_notifies_watchers(self, config, tmp_path):
        path = tmp_path / "bountiful.yaml"
        path.write_text(yaml.safe_dump({"fees": {"tx_fee": 1_200_000}}))
        manager = ConfigManager()
        manager.load_from_file(path)
        seen = []
        manager.watch(lambda cfg: seen.append(cfg.fees.tx_fee.get()))
        path.write_text(yaml.safe_dump({"fees": {"tx_fee": 1_300_000}}))
        manager.reload()
        assert seen == [1_300_000]

    def test_validate_reports_bad_schedule(self, config):
        config.distribution.recipients.set([f"{CREATOR.address()}:30"])
        errors = ConfigManager().validate()
        assert any(e.startswith("distribution.recipients") for e in errors)

    def test_validate_clean(self, config):
        assert ConfigManager().validate() == []

    def test_yaml_export(self, config):
        data = yaml.safe_load(config.to_yaml())
        assert data["fees"]["dev_fee_address"] == PLATFORM.address()
        assert data["lifecycle"]["default_version"] == LATEST_VERSION.value

    def test_schema_lists_env_vars(self, config):
        schema = ConfigManager().export_schema()
        rate = schema["properties"]["fees"]["dev_fee_rate"]
        assert rate["env_var"] == "BOUNTIFUL_DEV_FEE_RATE"
        assert rate["type"] == "int"
