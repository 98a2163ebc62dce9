import re
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from sqlmodel import Session, select
from fleetctl.core.errors import TemplateSelectionError, VariableError
from fleetctl.models import CommandTemplate, Host, JobType

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*\}\}")


@dataclass
class RenderedCommand:
    template: CommandTemplate
    command: str
    timeout: int
    cwd: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)


def is_applicable(template: CommandTemplate, host: Host, job_type: Optional[JobType] = None) -> bool:
    """Checks the OS filter and capability requirements of one variant against a host."""
    os_filter = [os.lower() for os in (template.os_filter or [])]
    if os_filter and (host.os_family or "").lower() not in os_filter:
        return False
    required = set(template.required_capabilities or [])
    if job_type:
        required.update(job_type.required_capabilities or [])
    return required.issubset(host.capabilities or [])


def specificity_key(template: CommandTemplate) -> tuple[int, int, int]:
    """Sort key: explicit OS filters first, narrower filters first, then lowest id."""
    os_filter = template.os_filter or []
    return (0 if os_filter else 1, len(os_filter), template.id or 0)


def select_template(
    host: Host,
    candidates: list[CommandTemplate],
    job_type: Optional[JobType] = None,
) -> CommandTemplate:
    """Picks the single command variant that applies to a host.

    Selection is deterministic: identical host facts and candidate sets always
    yield the same template regardless of the order candidates are given in.

    Raises:
        TemplateSelectionError: When no candidate applies (NoApplicableTemplate).
    """
    applicable = [t for t in candidates if is_applicable(t, host, job_type)]
    if not applicable:
        raise TemplateSelectionError(
            f"No command template applies to host {host.name} "
            f"(os={host.os_family}, capabilities={sorted(host.capabilities or [])})"
        )
    applicable.sort(key=specificity_key)
    if len(applicable) > 1:
        logger.debug(
            f"Host {host.name}: {len(applicable)} applicable templates, "
            f"selected {applicable[0].id}"
        )
    return applicable[0]


def merge_variables(
    command_template: CommandTemplate,
    template_vars: Optional[dict[str, Any]] = None,
    step_vars: Optional[dict[str, Any]] = None,
    runtime_vars: Optional[dict[str, Any]] = None,
    host: Optional[Host] = None,
) -> dict[str, str]:
    """Merges variable layers, later layers winning.

    Precedence: runtime > step override > job template default >
    command template default > host built-ins.
    """
    merged: dict[str, Any] = {}
    if host is not None:
        merged.update({
            "host_name": host.name,
            "host_address": host.hostname,
            "os_family": host.os_family or "",
        })
    for layer in (command_template.variables, template_vars, step_vars, runtime_vars):
        if layer:
            merged.update(layer)
    return {k: "" if v is None else str(v) for k, v in merged.items()}


def render(text: str, variables: dict[str, str]) -> str:
    """Substitutes ``{{name}}`` placeholders.

    Raises:
        VariableError: If any placeholder has no value (UnresolvedVariable).
    """
    missing = sorted({m.group(1) for m in PLACEHOLDER_RE.finditer(text) if m.group(1) not in variables})
    if missing:
        raise VariableError(f"Unresolved variable(s): {', '.join(missing)}", names=missing)
    return PLACEHOLDER_RE.sub(lambda m: variables[m.group(1)], text)


class TemplateService:
    """Loads command variants and turns the selected one into a runnable command."""
    def __init__(self, db: Session):
        self.db = db

    def get_candidates(self, job_type_id: int, command_template_id: Optional[int] = None) -> list[CommandTemplate]:
        """Returns the variants eligible for a job.

        When a command template is referenced, only the variants sharing its
        name within the job type compete; otherwise every template of the
        job type does.
        """
        statement = select(CommandTemplate).where(CommandTemplate.job_type_id == job_type_id)
        if command_template_id is not None:
            referenced = self.db.get(CommandTemplate, command_template_id)
            if referenced is None:
                return []
            statement = statement.where(CommandTemplate.name == referenced.name)
        return list(self.db.exec(statement.order_by(CommandTemplate.id)).all())

    def select_for_host(
        self,
        host: Host,
        job_type: JobType,
        command_template_id: Optional[int] = None,
    ) -> CommandTemplate:
        candidates = self.get_candidates(job_type.id, command_template_id)
        return select_template(host, candidates, job_type)

    @staticmethod
    def render_command(
        template: CommandTemplate,
        variables: dict[str, str],
        default_timeout: int,
        timeout_override: Optional[int] = None,
    ) -> RenderedCommand:
        """Renders command, working directory and environment in one go.

        Nothing is returned unless every placeholder resolves, so a
        VariableError always happens before any remote call.
        """
        command = render(template.command, variables)
        cwd = render(template.working_directory, variables) if template.working_directory else None
        env = {k: render(str(v), variables) for k, v in (template.environment or {}).items()}
        timeout = timeout_override or template.timeout_seconds or default_timeout
        return RenderedCommand(template=template, command=command, timeout=timeout, cwd=cwd, env=env)
