"""
Workflow templates: reusable definitions with ``{{param}}`` placeholders.

A template stores a definition together with the parameters it expects,
inferred from its global parameters and from the placeholders found in step
inputs. Instantiating a template clones the definition, applies parameter
overrides and creates a regular workflow through ``WorkflowService`` (so
the result is validated like any other workflow).

Example:
    ```python
    templates = TemplateService(repository, workflows)
    template = await templates.create_template("order-flow", "commerce", definition)
    workflow = await templates.instantiate_template(
        template.id, "acme orders", "acme", {"region": "eu-west-1"}
    )
    ```
"""

import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from uuid_extensions import uuid7

from pytaxis.core.errors import InvalidStateError, NotFoundError
from pytaxis.core.expressions import MISSING
from pytaxis.core.pagination import fetch_page
from pytaxis.core.placeholders import placeholder_names, substitute
from pytaxis.core.validation import validate_definition
from pytaxis.models import (
    ConditionalConfig,
    HumanTaskConfig,
    LoopConfig,
    Page,
    ParallelConfig,
    ParameterSchema,
    ParameterType,
    Step,
    StepKind,
    Workflow,
    WorkflowDefinition,
    WorkflowTemplate,
    walk_steps,
)
from pytaxis.service import WorkflowService
from pytaxis.storage.base import WorkflowRepository

logger = logging.getLogger(__name__)

__all__ = [
    "TemplateService",
    "extract_parameter_schemas",
    "extract_tags",
    "apply_parameter_overrides",
]


class TemplateService:
    """Template catalogue and instantiation."""

    def __init__(self, repository: WorkflowRepository, workflows: WorkflowService):
        self.repository = repository
        self.workflows = workflows

    def __repr__(self) -> str:
        return f"TemplateService(repository={self.repository!r})"

    async def create_template(
        self,
        name: str,
        category: str,
        definition: WorkflowDefinition,
        description: str = "",
        metadata: dict[str, str] | None = None,
    ) -> WorkflowTemplate:
        """
        Store a new template.

        Raises:
            InvalidStateError: If a template with this name already exists
            ValidationError: If the definition is malformed or cyclic
        """
        if await self.repository.get_template_by_name(name) is not None:
            raise InvalidStateError(f"Template with name {name} already exists")
        validate_definition(definition)

        metadata = dict(metadata or {})
        template = WorkflowTemplate(
            id=str(uuid7()),
            name=name,
            category=category,
            definition=definition,
            description=description,
            parameter_schemas=extract_parameter_schemas(definition),
            tags=extract_tags(category, definition, metadata),
            metadata=metadata,
        )
        await self.repository.save_template(template)
        logger.info(
            f"Created template {template.id} ({name}) with "
            f"{len(template.parameter_schemas)} parameter(s)"
        )
        return template

    async def get_template(self, template_id: str) -> WorkflowTemplate:
        """
        Raises:
            NotFoundError: If the template does not exist
        """
        template = await self.repository.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    async def list_templates(
        self,
        category: str | None = None,
        page_size: int | None = None,
        page_token: str | None = None,
    ) -> Page[WorkflowTemplate]:
        """Templates, newest first, optionally filtered by category."""
        return await fetch_page(
            lambda offset, limit: self.repository.list_templates(
                category=category, offset=offset, limit=limit
            ),
            page_size,
            page_token,
        )

    async def instantiate_template(
        self,
        template_id: str,
        name: str,
        tenant_id: str,
        parameter_overrides: dict[str, Any] | None = None,
    ) -> Workflow:
        """
        Create a DRAFT workflow from a template.

        Raises:
            NotFoundError: If the template does not exist
            ValidationError: If the resulting definition is invalid
        """
        template = await self.get_template(template_id)
        definition = apply_parameter_overrides(template.definition, parameter_overrides or {})
        workflow = await self.workflows.create_workflow(
            name=name,
            tenant_id=tenant_id,
            definition=definition,
            description=template.description or f"Created from template: {template.name}",
            metadata={"template_id": template.id, "template_name": template.name},
        )
        logger.info(f"Instantiated template {template.name} as workflow {workflow.id}")
        return workflow


def _parameter_type(value: Any) -> ParameterType:
    if isinstance(value, bool):
        return ParameterType.BOOLEAN
    if isinstance(value, int | float):
        return ParameterType.NUMBER
    if isinstance(value, list | tuple):
        return ParameterType.ARRAY
    if isinstance(value, dict):
        return ParameterType.OBJECT
    return ParameterType.STRING


def extract_parameter_schemas(definition: WorkflowDefinition) -> dict[str, ParameterSchema]:
    """Parameters a template expects.

    Global parameters are optional and typed after their default value.
    Placeholders in step inputs (nested steps included) that are not global
    parameters are required strings.
    """
    schemas: dict[str, ParameterSchema] = {}
    for key, value in definition.global_parameters.items():
        schemas[key] = ParameterSchema(
            name=key,
            type=_parameter_type(value),
            default_value=value,
            required=False,
            description=f"Global parameter: {key}",
        )

    for step in walk_steps(definition.steps):
        for name in placeholder_names(step.input):
            if name not in schemas:
                schemas[name] = ParameterSchema(
                    name=name,
                    type=ParameterType.STRING,
                    required=True,
                    description=f"Used in step: {step.name}",
                )
    return schemas


def extract_tags(
    category: str, definition: WorkflowDefinition, metadata: dict[str, str]
) -> list[str]:
    """Category, comma-separated ``metadata["tags"]`` and feature tags, deduplicated."""
    tags = [category]
    if metadata.get("tags"):
        tags.extend(t.strip() for t in metadata["tags"].split(",") if t.strip())

    kinds = {step.kind for step in walk_steps(definition.steps)}
    if definition.triggers:
        tags.append("triggered")
    if StepKind.PARALLEL in kinds:
        tags.append("parallel")
    if StepKind.HUMAN_TASK in kinds:
        tags.append("human-approval")

    return list(dict.fromkeys(tags))


def apply_parameter_overrides(
    definition: WorkflowDefinition, overrides: dict[str, Any]
) -> WorkflowDefinition:
    """Copy of ``definition`` with overrides applied.

    Existing global parameters named in ``overrides`` take the new value;
    unknown names are not added. ``{{name}}`` placeholders in step inputs
    are replaced wherever ``name`` is overridden and kept otherwise.
    """

    def lookup(name: str) -> Any:
        return overrides.get(name, MISSING)

    global_parameters = {
        key: overrides.get(key, value) for key, value in definition.global_parameters.items()
    }
    return replace(
        definition,
        steps=tuple(_override_step(step, lookup) for step in definition.steps),
        global_parameters=global_parameters,
    )


def _override_step(step: Step, lookup: Callable[[str], Any]) -> Step:
    def nested(steps: tuple[Step, ...]) -> tuple[Step, ...]:
        return tuple(_override_step(s, lookup) for s in steps)

    config = step.config
    if isinstance(config, ParallelConfig | LoopConfig):
        config = replace(config, steps=nested(config.steps))
    elif isinstance(config, ConditionalConfig):
        config = replace(
            config, if_steps=nested(config.if_steps), else_steps=nested(config.else_steps)
        )
    elif isinstance(config, HumanTaskConfig) and config.on_timeout is not None:
        config = replace(config, on_timeout=_override_step(config.on_timeout, lookup))

    return replace(step, config=config, input=substitute(step.input, lookup))
