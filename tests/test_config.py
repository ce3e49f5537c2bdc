from pathlib import Path

import pytest

from polypkg.core.config import DEFAULT_CANCEL_GRACE, DEFAULT_TIMEOUT, load_settings
from polypkg.core.errors import ConfigError


def test_defaults_from_empty_environment():
    settings = load_settings({})

    assert settings.timeout == DEFAULT_TIMEOUT == 300.0
    assert settings.command_timeout is None
    assert settings.cancel_grace == DEFAULT_CANCEL_GRACE
    assert settings.log_level == "INFO"
    assert settings.log_file is None
    assert settings.disabled_managers == frozenset()


def test_values_from_environment():
    settings = load_settings({
        "POLYPKG_TIMEOUT": "60",
        "POLYPKG_COMMAND_TIMEOUT": "30.5",
        "POLYPKG_CANCEL_GRACE": "1",
        "POLYPKG_LOG_LEVEL": "debug",
        "POLYPKG_LOG_FILE": "/tmp/p.log",
        "POLYPKG_DISABLED_MANAGERS": "yum, apt ,,",
    })

    assert settings.timeout == 60.0
    assert settings.command_timeout == 30.5
    assert settings.cancel_grace == 1.0
    assert settings.log_level == "DEBUG"
    assert settings.log_file == Path("/tmp/p.log")
    assert settings.disabled_managers == {"apt", "yum"}


@pytest.mark.parametrize("value", ["soon", "-1"])
def test_invalid_numbers_raise_config_error(value):
    with pytest.raises(ConfigError) as exc:
        load_settings({"POLYPKG_TIMEOUT": value})
    assert exc.value.context["key"] == "POLYPKG_TIMEOUT"
