import pytest

from app.domain.catalog.db_models import Service, ServiceDeposit
from app.domain.catalog.deposits import DepositPolicy, compute_deposit_cents, deposit_due_cents


@pytest.mark.parametrize(
    ("price_cents", "policy", "expected"),
    [
        (15000, DepositPolicy("percent", 20), 3000),
        (999, DepositPolicy("percent", 25), 250),
        (1001, DepositPolicy("percent", 25), 250),
        (1002, DepositPolicy("percent", 25), 251),
        (5000, DepositPolicy("flat", 2000), 2000),
        (1500, DepositPolicy("flat", 2000), 1500),
        (5000, DepositPolicy("percent", 0), 0),
        (0, DepositPolicy("percent", 50), 0),
        (5000, None, 0),
    ],
)
def test_compute_deposit_cents(price_cents, policy, expected):
    assert compute_deposit_cents(price_cents, policy) == expected


def test_policy_rejects_invalid_values():
    with pytest.raises(ValueError):
        DepositPolicy("percent", 101)
    with pytest.raises(ValueError):
        DepositPolicy("flat", -1)
    with pytest.raises(ValueError):
        DepositPolicy("bogus", 10)  # type: ignore[arg-type]


def test_service_override_beats_default():
    service = Service(service_id="svc", name="Color", duration_minutes=90, price_cents=12000)
    service.deposit = ServiceDeposit(service_id="svc", deposit_type="flat", deposit_value=5000)
    default = DepositPolicy("percent", 20)

    assert deposit_due_cents(service, deposits_enabled=True, default_policy=default) == 5000
    assert deposit_due_cents(service, deposits_enabled=False, default_policy=default) == 0


def test_default_policy_applies_without_override():
    service = Service(service_id="svc", name="Trim", duration_minutes=30, price_cents=4000)
    service.deposit = None

    assert deposit_due_cents(service, deposits_enabled=True, default_policy=DepositPolicy("percent", 20)) == 800
    assert deposit_due_cents(service, deposits_enabled=True, default_policy=None) == 0


def test_services_endpoint_reports_deposit(client):
    response = client.get("/v1/booking/services")
    assert response.status_code == 200
    services = response.json()
    assert len(services) == 1
    assert services[0]["name"] == "Consultation"
    assert services[0]["deposit_amount_cents"] == 3000
