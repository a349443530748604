from datetime import timedelta

import pytest

from settings import DEFAULT_CLIENT_IP_HEADERS, ConfigurationError, Settings


def test_defaults():
    settings = Settings.from_env({})
    assert settings.rate_limit == 100
    assert settings.rate_block_ttl == timedelta(minutes=10)
    assert settings.medium_block_ttl == timedelta(minutes=30)
    assert settings.recovery_grace == timedelta(minutes=15)
    assert settings.escalation_threshold == 10
    assert settings.client_ip_headers == DEFAULT_CLIENT_IP_HEADERS
    assert settings.firewall_backend == "iptables"


def test_env_values_are_coerced():
    settings = Settings.from_env(
        {
            "IDS_GUARD_RATE_LIMIT": "250",
            "IDS_GUARD_FIREWALL_ENABLED": "off",
            "IDS_GUARD_FIREWALL_BACKEND": "ufw",
            "IDS_GUARD_COMMAND_TIMEOUT_SECONDS": "2.5",
            "IDS_GUARD_EMERGENCY_CONTACTS": "ciso@example.com, oncall@example.com,",
            "IDS_GUARD_EVENT_STORE_PATH": "  ",
            "IDS_GUARD_ENVIRONMENT": "development",
        }
    )
    assert settings.rate_limit == 250
    assert settings.firewall_enabled is False
    assert settings.firewall_backend == "ufw"
    assert settings.command_timeout_seconds == 2.5
    assert settings.emergency_contacts == ("ciso@example.com", "oncall@example.com")
    assert settings.event_store_path is None
    assert settings.environment == "development"


@pytest.mark.parametrize(
    "env",
    [
        {"IDS_GUARD_RATE_LIMIT": "lots"},
        {"IDS_GUARD_AUTO_UNBLOCK": "maybe"},
        {"IDS_GUARD_RATE_LIMIT": "0"},
        {"IDS_GUARD_ESCALATION_WINDOW": "-1"},
        {"IDS_GUARD_FIREWALL_BACKEND": "pf"},
        {"IDS_GUARD_ENVIRONMENT": "staging"},
        {"IDS_GUARD_CLIENT_IP_HEADERS": " , "},
    ],
)
def test_bad_values_fail_at_startup(env):
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)


def test_overrides_win_over_environment():
    settings = Settings.from_env({"IDS_GUARD_RATE_LIMIT": "250"}, rate_limit=5)
    assert settings.rate_limit == 5


def test_slack_webhook_fallback_variable():
    settings = Settings.from_env({"SLACK_WEBHOOK_URL": "https://hooks.slack.test/T/B/x"})
    assert settings.slack_webhook_url == "https://hooks.slack.test/T/B/x"

    explicit = Settings.from_env(
        {
            "SLACK_WEBHOOK_URL": "https://hooks.slack.test/old",
            "IDS_GUARD_SLACK_WEBHOOK_URL": "https://hooks.slack.test/new",
        }
    )
    assert explicit.slack_webhook_url == "https://hooks.slack.test/new"


def test_as_dict_masks_webhook():
    settings = Settings(slack_webhook_url="https://hooks.slack.test/secret")
    dumped = settings.as_dict()
    assert dumped["slack_webhook_url"] == "***"
    assert dumped["rate_limit"] == 100


def test_escalation_exempt_rules_from_env():
    assert Settings.from_env({}).escalation_exempt_rules == ()
    settings = Settings.from_env({"IDS_GUARD_ESCALATION_EXEMPT_RULES": "SUSPICIOUS_USER_AGENT,"})
    assert settings.escalation_exempt_rules == ("SUSPICIOUS_USER_AGENT",)
