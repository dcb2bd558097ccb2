from dataclasses import dataclass
from typing import List

PROBLEM_NAMESPACE = "urn:crm-automation:problem"


def problem_type(slug: str) -> str:
    return f"{PROBLEM_NAMESPACE}:{slug}"


@dataclass
class DomainError(Exception):
    """Base for errors surfaced to API callers as problem documents."""

    detail: str
    title: str = "Automation Error"
    type: str = problem_type("automation-error")
    errors: List[dict] | None = None
    status_code: int = 400


@dataclass
class NotFound(DomainError):
    title: str = "Not Found"
    type: str = problem_type("not-found")
    status_code: int = 404


@dataclass
class InvalidConfiguration(DomainError):
    # Rule, trigger or action config rejected; errors carry field paths.
    title: str = "Invalid Configuration"
    type: str = problem_type("invalid-configuration")
    status_code: int = 422


@dataclass
class NoEligibleSeller(DomainError):
    title: str = "No Eligible Seller"
    type: str = problem_type("no-eligible-seller")
    status_code: int = 409

