import pytest

from gamedeploy.core.errors import ErrorKind, RequestValidationError
from gamedeploy.core.pydantic_models import DeploymentRequest
from gamedeploy.core.validation import (
    ALLOWED_MEMORY_MB,
    MAX_CORES,
    parse_deployment_request,
    validate_deployment_request,
)


def _request(payload, **overrides):
    data = dict(payload)
    minecraft_overrides = overrides.pop("minecraft", None)
    data.update(overrides)
    if minecraft_overrides is not None:
        data["minecraft"] = {**payload["minecraft"], **minecraft_overrides}
    return DeploymentRequest.model_validate(data)


def test_valid_request_passes(request_payload):
    validate_deployment_request(_request(request_payload))


@pytest.mark.parametrize(
    "cores, accepted",
    [(0, False), (1, True), (MAX_CORES, True), (MAX_CORES + 1, False)],
)
def test_core_bounds(request_payload, cores, accepted):
    request = _request(request_payload, cores=cores)
    if accepted:
        validate_deployment_request(request)
    else:
        with pytest.raises(RequestValidationError) as exc:
            validate_deployment_request(request)
        assert exc.value.field == "cores"


def test_memory_must_be_in_allow_list(request_payload):
    for memory_mb in ALLOWED_MEMORY_MB:
        validate_deployment_request(_request(request_payload, memory_mb=memory_mb))

    with pytest.raises(RequestValidationError) as exc:
        validate_deployment_request(_request(request_payload, memory_mb=6000))
    assert exc.value.field == "memory_mb"
    assert exc.value.kind is ErrorKind.VALIDATION


@pytest.mark.parametrize(
    "disk_gb, accepted",
    [(9, False), (10, True), (500, True), (501, False), (None, True)],
)
def test_disk_bounds(request_payload, disk_gb, accepted):
    request = _request(request_payload, disk_gb=disk_gb)
    if accepted:
        validate_deployment_request(request)
    else:
        with pytest.raises(RequestValidationError):
            validate_deployment_request(request)


def test_empty_name_rejected(request_payload):
    with pytest.raises(RequestValidationError) as exc:
        validate_deployment_request(_request(request_payload, name="   "))
    assert exc.value.field == "name"


def test_malformed_static_ip_rejected(request_payload):
    request = _request(request_payload, ip_address="10.0.0.300", cidr=24, gateway="10.0.0.1")
    with pytest.raises(RequestValidationError) as exc:
        validate_deployment_request(request)
    assert exc.value.field == "ip_address"


@pytest.mark.parametrize(
    "cidr, accepted",
    [(7, False), (8, True), (32, True), (33, False), (None, False)],
)
def test_static_ip_prefix_bounds(request_payload, cidr, accepted):
    request = _request(request_payload, ip_address="10.0.0.50", cidr=cidr, gateway="10.0.0.1")
    if accepted:
        validate_deployment_request(request)
    else:
        with pytest.raises(RequestValidationError) as exc:
            validate_deployment_request(request)
        assert exc.value.field == "cidr"


def test_static_ip_requires_valid_gateway(request_payload):
    with pytest.raises(RequestValidationError) as exc:
        validate_deployment_request(_request(request_payload, ip_address="10.0.0.50", cidr=24))
    assert exc.value.field == "gateway"

    with pytest.raises(RequestValidationError):
        validate_deployment_request(
            _request(request_payload, ip_address="10.0.0.50", cidr=24, gateway="gateway")
        )


def test_version_required_for_vanilla(request_payload):
    with pytest.raises(RequestValidationError) as exc:
        validate_deployment_request(_request(request_payload, minecraft={"version": " "}))
    assert exc.value.field == "minecraft.version"


def test_version_optional_for_paper(request_payload):
    validate_deployment_request(
        _request(request_payload, minecraft={"type": "paper", "version": ""})
    )


@pytest.mark.parametrize(
    "minecraft",
    [
        {"port": 0},
        {"port": 65536},
        {"rcon_port": 70000},
        {"extra_ports": [25565, 0]},
        {"max_players": 0},
        {"backup_retention": -1},
    ],
)
def test_application_fields_rejected(request_payload, minecraft):
    with pytest.raises(RequestValidationError):
        validate_deployment_request(_request(request_payload, minecraft=minecraft))


def test_ports_at_bounds_accepted(request_payload):
    validate_deployment_request(
        _request(request_payload, minecraft={"port": 1, "rcon_port": 65535, "extra_ports": [19132]})
    )


def test_parse_reports_type_errors_as_validation_errors(request_payload):
    payload = dict(request_payload, cores="many")
    with pytest.raises(RequestValidationError) as exc:
        parse_deployment_request(payload)
    assert exc.value.field == "cores"
    assert "invalid cores" in exc.value.message


@pytest.mark.parametrize("schema_version", [1, 99])
def test_only_current_schema_version_admitted(request_payload, schema_version):
    with pytest.raises(RequestValidationError) as exc:
        validate_deployment_request(_request(request_payload, schema_version=schema_version))
    assert exc.value.field == "schema_version"
