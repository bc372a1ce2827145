import pytest

import policies
from exc import ConfigurationError
from models import PodSpec, ResourceTotals
from quantity import Quantity


EMPTY_SPEC = PodSpec(containers=[])


def totals(cpu="0", memory="0"):
    return ResourceTotals(cpu=Quantity.parse(cpu), memory=Quantity.parse(memory))


def test_allow_all():
    decision = policies.AllowAllPolicy().decide(totals("64", "1Ti"), EMPTY_SPEC)
    assert decision.allowed
    assert decision.message is None


def test_ceiling_allows_at_limit():
    policy = policies.ResourceCeilingPolicy(max_cpu="2", max_memory="1Gi")
    decision = policy.decide(totals("2000m", "1024Mi"), EMPTY_SPEC)
    assert decision.allowed


def test_ceiling_denies_cpu():
    policy = policies.ResourceCeilingPolicy(max_cpu="1")
    decision = policy.decide(totals("1001m", "64Gi"), EMPTY_SPEC)
    assert not decision.allowed
    assert decision.message == "total cpu request 1001m exceeds ceiling 1"


def test_ceiling_denies_memory():
    policy = policies.ResourceCeilingPolicy(max_memory="256Mi")
    decision = policy.decide(totals("100", "384Mi"), EMPTY_SPEC)
    assert not decision.allowed
    assert decision.message == "total memory request 384Mi exceeds ceiling 256Mi"


def test_ceiling_without_limits_allows():
    decision = policies.ResourceCeilingPolicy().decide(totals("100", "1Ti"), EMPTY_SPEC)
    assert decision.allowed


def test_ceiling_invalid_limit():
    with pytest.raises(ConfigurationError):
        policies.ResourceCeilingPolicy(max_cpu="plenty")


def test_load_policy():
    policy = policies.load_policy("resource-ceiling", {"MAX_CPU": 4, "MAX_MEMORY": "8Gi"})
    assert isinstance(policy, policies.ResourceCeilingPolicy)
    assert policy.ceilings["cpu"] == Quantity.parse("4")
    assert policy.ceilings["memory"] == Quantity.parse("8Gi")

    assert isinstance(policies.load_policy("allow", {}), policies.AllowAllPolicy)


def test_load_unknown_policy():
    with pytest.raises(ConfigurationError, match="unknown policy"):
        policies.load_policy("deny-everything", {})
