from unittest.mock import patch

from custody import main as entrypoint
from custody.errors import ConfigError


def test_config_error_aborts_before_serving():
    with patch.object(entrypoint, "load_settings", side_effect=ConfigError("vault key too short")), patch.object(
        entrypoint, "run_api"
    ) as run_api:
        assert entrypoint.main() == entrypoint.CONFIG_ERROR_EXIT_CODE
    run_api.assert_not_called()


def test_starts_api_with_valid_settings(settings):
    with patch.object(entrypoint, "load_settings", return_value=settings), patch.object(
        entrypoint, "run_api"
    ) as run_api:
        assert entrypoint.main() == 0
    run_api.assert_called_once()
