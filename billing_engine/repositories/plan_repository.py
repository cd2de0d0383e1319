"""Plan repository - loads and provides access to plan definitions.

Loads from config/billing.yaml and provides lookup methods.
"""

from typing import Dict, List, Optional

from billing_engine.config import Config, get_config
from billing_engine.errors import PlanNotFoundError
from billing_engine.models import PlanDefinition


class PlanRepository:
    """Repository for billable plan definitions.

    Loads plan definitions from configuration and provides fast lookup.
    Thread-safe for read operations.
    """

    def __init__(self, config: Optional[Config] = None):
        """Initialize plan repository.

        Args:
            config: Configuration instance. If not provided, uses global config.
        """
        self._config = config or get_config()
        self._plans_by_id: Dict[str, PlanDefinition] = {}
        self._load_plans()

    def _load_plans(self) -> None:
        """Load plan definitions from configuration into indexed dictionary."""
        self._plans_by_id.clear()
        for plan in self._config.plans:
            self._plans_by_id[plan.id] = plan

    def get_by_id(self, plan_id: str) -> PlanDefinition:
        """Get plan definition by ID.

        Args:
            plan_id: Plan ID (e.g., "plan_pro_monthly")

        Returns:
            PlanDefinition

        Raises:
            PlanNotFoundError: If plan ID not found
        """
        plan = self._plans_by_id.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(
                f"Plan not found: {plan_id}. "
                f"Available plans: {list(self._plans_by_id.keys())}"
            )
        return plan

    def find_by_id(self, plan_id: str) -> Optional[PlanDefinition]:
        """Find plan definition by ID (returns None if not found)."""
        return self._plans_by_id.get(plan_id)

    def get_all(self) -> List[PlanDefinition]:
        return list(self._plans_by_id.values())

    def get_by_currency(self, currency: str) -> List[PlanDefinition]:
        """Get plans priced in a given currency."""
        currency = currency.upper()
        return [p for p in self._plans_by_id.values() if p.currency == currency]

    def exists(self, plan_id: str) -> bool:
        return plan_id in self._plans_by_id

    def reload(self) -> None:
        """Reload plan definitions from configuration."""
        self._config.reload()
        self._load_plans()

    def __len__(self) -> int:
        return len(self._plans_by_id)

    def __contains__(self, plan_id: str) -> bool:
        return plan_id in self._plans_by_id

    def __repr__(self) -> str:
        return f"PlanRepository(plans={len(self._plans_by_id)})"


# Global repository instance
_repository_instance: Optional[PlanRepository] = None


def get_plan_repository(config: Optional[Config] = None) -> PlanRepository:
    """Get global plan repository instance (singleton).

    Args:
        config: Optional configuration instance (only used on first call)

    Returns:
        PlanRepository instance
    """
    global _repository_instance
    if _repository_instance is None:
        _repository_instance = PlanRepository(config)
    return _repository_instance


def reset_plan_repository() -> None:
    """Drop the global plan repository (for testing)."""
    global _repository_instance
    _repository_instance = None
