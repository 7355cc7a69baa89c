import pytest
from pydantic import ValidationError

from app.settings import Settings


@pytest.mark.parametrize("value", ["Mars/Olympus", "America", "../etc/passwd"])
def test_reservation_timezone_must_name_a_zone(value):
    with pytest.raises(ValidationError, match="unknown timezone"):
        Settings(reservation_timezone=value, _env_file=None)


def test_reservation_timezone_default_is_valid():
    settings = Settings(_env_file=None)

    assert settings.reservation_timezone == "America/Edmonton"


def test_percent_default_deposit_is_capped():
    with pytest.raises(ValidationError, match="percent deposits"):
        Settings(default_deposit_type="percent", default_deposit_value=150, _env_file=None)
