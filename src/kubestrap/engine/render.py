# src/kubestrap/engine/render.py

from __future__ import annotations

from typing import Mapping

from jinja2 import Environment, StrictUndefined, TemplateError, TemplateSyntaxError, UndefinedError

from kubestrap.config.models import NodeDescriptor, PlanConfig, Role, StepDefinition
from kubestrap.errors import ConfigError

_env = Environment(
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_jinja_text(template_text: str, context: dict) -> str:
    return _env.from_string(template_text).render(**context)


def render_command(
    step: StepDefinition,
    node: NodeDescriptor,
    plan: PlanConfig,
    outputs: Mapping[str, str],
) -> str:
    """Fill in a step's command template for one node."""
    control_planes = plan.nodes_with_role(Role.CONTROL_PLANE)
    context = {
        "node": node,
        "plan": plan,
        "cluster_name": plan.cluster_name,
        "control_plane": control_planes[0] if control_planes else None,
        "workers": " ".join(n.id for n in plan.nodes_with_role(Role.WORKER)),
        "outputs": dict(outputs),
    }
    try:
        return render_jinja_text(step.command, context)
    except UndefinedError as e:
        raise ConfigError(
            f"step '{step.name}' on {node.id}: template references a value that is not available ({e})"
        ) from e
    except TemplateSyntaxError as e:
        raise ConfigError(f"step '{step.name}' on {node.id}: bad command template: {e}") from e
    except TemplateError as e:
        raise ConfigError(f"step '{step.name}' on {node.id}: could not render command: {e}") from e
