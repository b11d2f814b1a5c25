import pytest

from berryorm import Config, ConfigurationError


def test_defaults():
    config = Config()
    assert config.on_unresolved_type == 'fail'
    assert config.log_statements is False


def test_from_env_reads_prefixed_values():
    config = Config.from_env({'BERRYORM_ON_UNRESOLVED_TYPE': 'Skip', 'BERRYORM_LOG_STATEMENTS': 'yes'})
    assert config.on_unresolved_type == 'skip'
    assert config.log_statements is True


def test_from_env_with_custom_prefix():
    config = Config.from_env({'APP_LOG_STATEMENTS': '0'}, prefix='APP_')
    assert config == Config()


def test_invalid_mode_rejected():
    with pytest.raises(ConfigurationError):
        Config(on_unresolved_type='ignore')
    with pytest.raises(ConfigurationError):
        Config.from_env({'BERRYORM_ON_UNRESOLVED_TYPE': 'maybe'})


def test_invalid_boolean_rejected():
    with pytest.raises(ConfigurationError):
        Config.from_env({'BERRYORM_LOG_STATEMENTS': 'sometimes'})
