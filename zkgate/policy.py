# zkgate/policy.py
import json
import logging
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from zkgate.errors import ConfigurationError
from zkgate.schemas import DisclosureOutput, Policy, PolicyDecision, ViolationKind, describe_errors

logger = logging.getLogger(__name__)


def check_age(policy: Policy, disclosure: DisclosureOutput) -> bool:
    if policy.minimum_age is None:
        return True
    # an undisclosed age counts as not proven
    if disclosure.older_than is not True:
        return False
    return (disclosure.minimum_age or 0) >= policy.minimum_age


def check_country(policy: Policy, disclosure: DisclosureOutput) -> bool:
    if not policy.excluded_countries or not disclosure.nationality:
        return True
    return disclosure.nationality.strip().upper() not in policy.excluded_countries


def check_sanctions(policy: Policy, disclosure: DisclosureOutput) -> bool:
    if not policy.sanctions_screen:
        return True
    return disclosure.ofac is not True


def check_attestation(policy: Policy, attestation_kind: int) -> bool:
    return attestation_kind in policy.accepted_attestation_kinds


class PolicyStore:
    """
    Read-only registry of named disclosure policies.

    Policies are registered while the process starts; evaluate() never
    mutates anything and always runs every rule, so callers get the full
    list of violations rather than the first one.
    """

    def __init__(self, policies: Optional[Iterable[Policy]] = None):
        self._policies: Dict[str, Policy] = {}
        for policy in policies or ():
            self.register(policy)

    def register(self, policy: Policy) -> None:
        if policy.name in self._policies:
            raise ConfigurationError(f"duplicate policy name: {policy.name}")
        self._policies[policy.name] = policy
        logger.info("registered policy %s v%s", policy.name, policy.version)

    def get(self, name: str) -> Policy:
        try:
            return self._policies[name]
        except KeyError:
            raise ConfigurationError(f"unknown policy: {name}") from None

    def names(self):
        return sorted(self._policies)

    def evaluate(self, policy_name: str, disclosure: DisclosureOutput,
                 attestation_kind: Optional[int] = None) -> PolicyDecision:
        policy = self.get(policy_name)
        kind = disclosure.attestation_id if attestation_kind is None else attestation_kind
        outcomes = (
            (ViolationKind.MINIMUM_AGE, check_age(policy, disclosure)),
            (ViolationKind.EXCLUDED_COUNTRY, check_country(policy, disclosure)),
            (ViolationKind.SANCTIONS_MATCH, check_sanctions(policy, disclosure)),
            (ViolationKind.ATTESTATION_KIND, check_attestation(policy, kind)),
        )
        violations = tuple(v for v, ok in outcomes if not ok)
        return PolicyDecision(allowed=not violations, violations=violations)

    @classmethod
    def from_mapping(cls, document: dict) -> "PolicyStore":
        """Build a store from {"policies": [{...}, ...]} or {name: {...}}."""
        entries = document.get("policies") if "policies" in document else [
            dict(body, name=name) for name, body in document.items()
        ]
        try:
            return cls(Policy.model_validate(entry) for entry in entries)
        except ValidationError as e:
            raise ConfigurationError("invalid policy document", {"errors": describe_errors(e)}) from e

    @classmethod
    def from_settings(cls, settings) -> "PolicyStore":
        if settings.policy_file:
            with open(settings.policy_file, encoding="utf-8") as fh:
                store = cls.from_mapping(json.load(fh))
        else:
            store = cls()
        if settings.policy_name not in store._policies:
            try:
                store.register(Policy(
                    name=settings.policy_name,
                    minimum_age=settings.minimum_age,
                    excluded_countries=settings.excluded_countries,
                    sanctions_screen=settings.ofac,
                    accepted_attestation_kinds=settings.attestation_kinds,
                    disclosures=settings.disclosures,
                ))
            except ValidationError as e:
                raise ConfigurationError("invalid policy settings", {"errors": describe_errors(e)}) from e
        return store
