import logging
from typing import Any
from sqlmodel import Session, select
from fleetctl.core.errors import TargetResolutionError
from fleetctl.models import Host
from fleetctl.schemas.job import TargetSpec, TargetKind

logger = logging.getLogger(__name__)


class TargetResolver:
    """Turns a target rule into the concrete hosts of a run.

    The returned list is always ordered by host id so that the set of
    HostJobResults created for a run is stable and repeatable.
    """
    def __init__(self, db: Session):
        self.db = db

    def resolve(self, spec: TargetSpec) -> list[Host]:
        """Resolves a target rule.

        Args:
            spec: The explicit/tag/capability/all rule to evaluate.

        Returns:
            The matching hosts, id-ordered.

        Raises:
            TargetResolutionError: When nothing matches (NoTargets).
        """
        if spec.kind == TargetKind.HOSTS:
            hosts = self._explicit(spec.values)
        elif spec.kind == TargetKind.TAGS:
            required = set(str(v) for v in spec.values)
            hosts = [h for h in self._enabled() if required.issubset(h.tags or [])]
        elif spec.kind == TargetKind.CAPABILITIES:
            required = set(str(v) for v in spec.values)
            hosts = [h for h in self._enabled() if required.issubset(h.capabilities or [])]
        else:
            hosts = self._enabled()

        if not hosts:
            raise TargetResolutionError(
                f"No hosts matched target {spec.kind.value}={spec.values}"
            )
        logger.debug(f"Resolved target {spec.kind.value}={spec.values} to {len(hosts)} host(s)")
        return hosts

    def _enabled(self) -> list[Host]:
        statement = select(Host).where(Host.enabled == True).order_by(Host.id)  # noqa: E712
        return list(self.db.exec(statement).all())

    def _explicit(self, values: list[Any]) -> list[Host]:
        # Disabled or unreachable hosts are kept: they surface as failed results.
        ids = []
        for value in values:
            try:
                ids.append(int(value))
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid host id in target: {value!r}")
        if not ids:
            return []
        hosts = list(self.db.exec(select(Host).where(Host.id.in_(ids)).order_by(Host.id)).all())
        missing = set(ids) - {h.id for h in hosts}
        if missing:
            logger.warning(f"Target references unknown host ids: {sorted(missing)}")
        return hosts
