import pytest
from pydantic import ValidationError

from wechat_robot.config_schema import validate_wechat_config, wechat_config_json_schema


class TestConfigSchema:
    def test_empty_section_valid(self):
        model = validate_wechat_config(None)
        assert model.dm_policy is None
        assert model.accounts is None

    def test_full_section(self):
        model = validate_wechat_config(
            {
                "base_url": "http://robot.local:9000",
                "robot_id": 2,
                "dm_policy": "allowlist",
                "allow_from": ["wxid_a"],
                "polling": {"poll_contact_ids": ["wxid_a"], "polling_interval_ms": 1500},
                "accounts": {"work": {"api_token": "tok", "group_policy": "open"}},
                "default_account": "work",
            }
        )
        assert model.polling.polling_interval_ms == 1500
        assert model.accounts["work"].group_policy == "open"

    def test_bad_policy_rejected(self):
        with pytest.raises(ValidationError):
            validate_wechat_config({"dm_policy": "everyone"})

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_wechat_config({"robot_id": 0})

    def test_json_schema(self):
        schema = wechat_config_json_schema()
        assert "dm_policy" in schema["properties"]
        assert "accounts" in schema["properties"]
