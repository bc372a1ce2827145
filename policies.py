import logging

from typing_extensions import Protocol, override
from pydantic import BaseModel

from exc import ConfigurationError
from models import Patch, PodSpec, ResourceTotals
from quantity import Quantity

LOG = logging.getLogger(__name__)


class Decision(BaseModel):
    allowed: bool
    message: str | None = None
    patch: Patch | None = None

    @classmethod
    def allow(cls, patch: Patch | None = None) -> "Decision":
        return cls(allowed=True, patch=patch)

    @classmethod
    def deny(cls, message: str) -> "Decision":
        return cls(allowed=False, message=message)


class Policy(Protocol):
    """Decides whether a pod is admitted.

    A single policy instance serves every request, possibly from several
    threads at once, so implementations must not change after construction.
    """

    def decide(self, totals: ResourceTotals, spec: PodSpec) -> Decision: ...


class AllowAllPolicy(Policy):
    @classmethod
    def from_config(cls, config) -> "AllowAllPolicy":
        return cls()

    @override
    def decide(self, totals, spec):
        return Decision.allow()


class ResourceCeilingPolicy(Policy):
    """Deny pods whose summed requests exceed a configured ceiling."""

    def __init__(self, max_cpu=None, max_memory=None):
        try:
            self.ceilings = {
                "cpu": None if max_cpu is None else Quantity.validate(max_cpu),
                "memory": None if max_memory is None else Quantity.validate(max_memory),
            }
        except ValueError as err:
            raise ConfigurationError(f"invalid resource ceiling: {err}") from err

    @classmethod
    def from_config(cls, config) -> "ResourceCeilingPolicy":
        return cls(max_cpu=config.get("MAX_CPU"), max_memory=config.get("MAX_MEMORY"))

    @override
    def decide(self, totals, spec):
        for resource, ceiling in self.ceilings.items():
            if ceiling is None:
                continue

            total = getattr(totals, resource)
            if total > ceiling:
                LOG.info(
                    "total %s request %s exceeds ceiling %s", resource, total, ceiling
                )
                return Decision.deny(
                    f"total {resource} request {total} exceeds ceiling {ceiling}"
                )

        return Decision.allow()


POLICIES = {
    "allow": AllowAllPolicy,
    "resource-ceiling": ResourceCeilingPolicy,
}


def load_policy(name: str, config) -> Policy:
    try:
        policy_class = POLICIES[name]
    except KeyError:
        raise ConfigurationError(f"unknown policy {name!r}")

    return policy_class.from_config(config)
