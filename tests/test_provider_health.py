from relay_agent.config import AgentConfig, load_config
from relay_agent.errors import ErrorKind
from relay_agent.provider_health import RouteCircuitBreaker

ROUTE = "kilo/glm-5-free"


def _breaker(**kwargs):
    clock = {"now": 1000.0}
    return RouteCircuitBreaker(clock=lambda: clock["now"], **kwargs), clock


def test_circuit_opens_after_threshold_hard_failures_and_cools_down():
    breaker, clock = _breaker()

    assert not breaker.record_hard_failure(ROUTE, ErrorKind.AUTH)
    clock["now"] += 10
    assert not breaker.record_hard_failure(ROUTE, ErrorKind.AUTH)
    assert not breaker.is_open(ROUTE)
    clock["now"] += 10
    assert breaker.record_hard_failure(ROUTE, ErrorKind.MODEL_NOT_FOUND)
    assert breaker.is_open(ROUTE)

    # failures while already open do not extend the cooldown
    assert not breaker.record_hard_failure(ROUTE, ErrorKind.AUTH)
    clock["now"] += breaker.cooldown_s + 1
    assert not breaker.is_open(ROUTE)


def test_failures_outside_the_window_do_not_count():
    breaker, clock = _breaker(threshold=2, window_s=60.0)
    breaker.record_hard_failure(ROUTE, ErrorKind.AUTH)
    clock["now"] += 61
    assert not breaker.record_hard_failure(ROUTE, ErrorKind.AUTH)
    assert not breaker.is_open(ROUTE)


def test_success_resets_failure_history():
    breaker, _ = _breaker(threshold=2)
    breaker.record_hard_failure(ROUTE, ErrorKind.AUTH)
    breaker.record_success(ROUTE)
    assert not breaker.record_hard_failure(ROUTE, ErrorKind.AUTH)
    assert not breaker.is_open(ROUTE)


def test_routes_are_independent():
    breaker, _ = _breaker(threshold=1)
    breaker.record_hard_failure(ROUTE, ErrorKind.PROVIDER_INIT)
    assert breaker.is_open(ROUTE)
    assert not breaker.is_open("opencode/glm-5-free")
    assert not RouteCircuitBreaker().is_open("never/seen")


def test_routing_config_carries_circuit_settings(tmp_path):
    path = tmp_path / "agent.yaml"
    path.write_text("routing:\n  circuit_failure_threshold: 1\n  circuit_cooldown_ms: 5000\n")
    cfg = load_config(path, environ={})
    assert cfg.routing.circuit_failure_threshold == 1
    assert cfg.routing.circuit_cooldown_ms == 5000
    assert cfg.routing.circuit_window_ms == AgentConfig().routing.circuit_window_ms
