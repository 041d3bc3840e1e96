"""Tests for templates: parameter inference, tags and instantiation."""

import pytest
from helpers import service

from pytaxis import (
    ExecutionStatus,
    HumanTaskConfig,
    InvalidStateError,
    NotFoundError,
    ParallelConfig,
    ParameterType,
    Step,
    TemplateService,
    Trigger,
    TriggerKind,
    ValidationError,
    WorkflowDefinition,
    WorkflowStatus,
)
from pytaxis.templates import apply_parameter_overrides, extract_parameter_schemas, extract_tags


@pytest.fixture
def templates(repository, workflows) -> TemplateService:
    return TemplateService(repository, workflows)


FANOUT = Step(
    "fanout",
    "Notify",
    ParallelConfig(
        steps=(
            service("email", input={"to": "{{recipient}}", "subject": "Order {{order_id}}"}),
            service("sms", input={"to": "{{phone}}"}),
        )
    ),
)

DEFINITION = WorkflowDefinition(
    steps=(
        service("charge", input={"region": "{{region}}", "amount": "{{amount}}"}),
        Step("fanout", "Notify", FANOUT.config, depends_on=("charge",)),
    ),
    global_parameters={"region": "us-east-1", "amount": 10, "dry_run": False},
)


def test_parameter_schemas_from_globals_and_placeholders():
    schemas = extract_parameter_schemas(DEFINITION)

    assert list(schemas) == ["region", "amount", "dry_run", "recipient", "order_id", "phone"]
    assert schemas["region"].type == ParameterType.STRING
    assert schemas["region"].default_value == "us-east-1"
    assert not schemas["region"].required
    assert schemas["amount"].type == ParameterType.NUMBER
    assert schemas["dry_run"].type == ParameterType.BOOLEAN
    assert schemas["recipient"].required
    assert schemas["recipient"].type == ParameterType.STRING
    assert schemas["recipient"].description == "Used in step: EMAIL"


def test_tags_from_category_metadata_and_features():
    human = Step("approve", "Approve", HumanTaskConfig(assignee_expression="params.manager"))
    definition = WorkflowDefinition(
        steps=(FANOUT, human),
        triggers=(Trigger("hook", TriggerKind.WEBHOOK),),
    )

    tags = extract_tags("commerce", definition, {"tags": "orders, commerce ,,billing"})

    assert tags == ["commerce", "orders", "billing", "triggered", "parallel", "human-approval"]


def test_plain_definition_is_tagged_with_category_only():
    assert extract_tags("ops", WorkflowDefinition(steps=(service("a"),)), {}) == ["ops"]


def test_overrides_replace_globals_and_nested_placeholders():
    result = apply_parameter_overrides(
        DEFINITION, {"region": "eu-west-1", "recipient": "ops@example.com", "unknown": 1}
    )

    assert result.global_parameters == {"region": "eu-west-1", "amount": 10, "dry_run": False}
    assert result.steps[0].input == {"region": "eu-west-1", "amount": "{{amount}}"}
    email, sms = result.steps[1].config.steps
    assert email.input == {"to": "ops@example.com", "subject": "Order {{order_id}}"}
    assert sms.input == {"to": "{{phone}}"}
    assert result.steps[1].depends_on == ("charge",)
    # the template's own definition is untouched
    assert DEFINITION.steps[0].input["region"] == "{{region}}"


def test_embedded_placeholders_are_interpolated():
    result = apply_parameter_overrides(DEFINITION, {"order_id": 42})
    email = result.steps[1].config.steps[0]
    assert email.input["subject"] == "Order 42"


async def test_create_and_get_template(templates):
    template = await templates.create_template(
        "order-flow", "commerce", DEFINITION, description="Orders", metadata={"tags": "orders"}
    )

    stored = await templates.get_template(template.id)
    assert stored.name == "order-flow"
    assert stored.tags == ["commerce", "orders", "parallel"]
    assert set(stored.parameter_schemas) >= {"region", "recipient"}


async def test_duplicate_template_name_rejected(templates):
    await templates.create_template("order-flow", "commerce", DEFINITION)
    with pytest.raises(InvalidStateError, match="already exists"):
        await templates.create_template("order-flow", "other", DEFINITION)


async def test_invalid_template_definition_rejected(templates):
    with pytest.raises(ValidationError):
        await templates.create_template("broken", "ops", WorkflowDefinition(steps=()))


async def test_get_unknown_template(templates):
    with pytest.raises(NotFoundError):
        await templates.get_template("missing")


async def test_instantiate_creates_draft_workflow(templates, workflows):
    template = await templates.create_template("order-flow", "commerce", DEFINITION)

    workflow = await templates.instantiate_template(
        template.id, "acme orders", "acme", {"region": "eu-west-1", "phone": "555"}
    )

    assert workflow.status == WorkflowStatus.DRAFT
    assert workflow.tenant_id == "acme"
    assert workflow.description == "Created from template: order-flow"
    assert workflow.metadata == {"template_id": template.id, "template_name": "order-flow"}
    assert workflow.definition.global_parameters["region"] == "eu-west-1"
    assert workflow.definition.steps[1].config.steps[1].input == {"to": "555"}
    assert (await workflows.get_workflow(workflow.id)).name == "acme orders"


async def test_instantiate_keeps_template_description(templates):
    template = await templates.create_template(
        "order-flow", "commerce", DEFINITION, description="Charge then notify"
    )
    workflow = await templates.instantiate_template(template.id, "acme orders", "acme")
    assert workflow.description == "Charge then notify"


async def test_instantiated_workflow_runs(templates, workflows, scheduler, invoker):
    template = await templates.create_template("order-flow", "commerce", DEFINITION)
    workflow = await templates.instantiate_template(
        template.id,
        "acme orders",
        "acme",
        {"recipient": "a@b.c", "order_id": "7", "phone": "555"},
    )
    await workflows.activate_workflow(workflow.id)

    execution = await scheduler.start_execution(workflow.id, {"amount": 25})
    final = await scheduler.wait_for_execution(execution.id, timeout=5)

    assert final.status == ExecutionStatus.COMPLETED
    assert invoker.inputs["charge"] == [{"region": "us-east-1", "amount": 25}]
    assert invoker.inputs["email"] == [{"to": "a@b.c", "subject": "Order 7"}]


async def test_list_templates_by_category(templates):
    await templates.create_template("a", "commerce", DEFINITION)
    await templates.create_template("b", "ops", DEFINITION)
    await templates.create_template("c", "commerce", DEFINITION)

    commerce = await templates.list_templates(category="commerce")
    everything = await templates.list_templates(page_size=2)

    assert sorted(t.name for t in commerce.items) == ["a", "c"]
    assert commerce.total_count == 2
    assert everything.total_count == 3
    assert everything.next_page_token == "2"
