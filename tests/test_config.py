"""
Tests for SessionConfig loading.
"""

from datetime import date

import pytest
from questengine.config import SessionConfig

CONFIG_YAML = """
survey_name: Module1
await_persistence: true
today: 2024-03-07
prior_results:
  AGE: 42
labels:
  next: Continue
"""


def test_from_yaml():
    """Plain data comes from YAML, callables from keyword arguments."""
    store = lambda changed: {"code": 200}
    config = SessionConfig.from_yaml(CONFIG_YAML, store=store)
    assert config.survey_name == "Module1"
    assert config.await_persistence is True
    assert config.today == date(2024, 3, 7)
    assert config.prior_results == {"AGE": 42}
    assert config.labels == {"next": "Continue"}
    assert config.store is store


def test_defaults():
    """An empty document gives the defaults."""
    config = SessionConfig.from_yaml("")
    assert config.await_persistence is False
    assert config.language == "en"
    assert config.worker_timeout == 5.0


def test_today_from_string():
    """An ISO date string is parsed."""
    assert SessionConfig(today="2024-03-07").today == date(2024, 3, 7)


@pytest.mark.parametrize("text", [
    "surveyname: typo",
    "store: somewhere",
    "- a list",
    "worker_timeout: 0",
])
def test_invalid_yaml(text):
    """Unknown keys, callables in data, non-mappings and bad values are rejected."""
    with pytest.raises(ValueError):
        SessionConfig.from_yaml(text)


def test_unknown_callable():
    """Only store, retrieve and error_logger are callable fields."""
    with pytest.raises(ValueError):
        SessionConfig.from_dict({}, language=lambda: "en")
