"""Example integrations, usable as ``--setup guides.integrations_example:register``."""

from conduit import ActionResult, ConnectionCredentials, Integration, IntegrationMetadata
from conduit.registry import TriggerDescriptor


def build_crm() -> Integration:
    crm = Integration(
        metadata=IntegrationMetadata(
            slug="crm", name="Demo CRM", category="sales", auth_type="api_key"
        )
    )
    crm.add_trigger(TriggerDescriptor(id="contact_created", name="Contact created"))

    @crm.action("upsert_contact")
    async def upsert_contact(input, credentials, context):
        context.logger.info("Upserting contact %s", input.get("email"))
        return ActionResult.ok({"contact_id": f"c-{input['email']}", **input})

    return crm


def build_mailer() -> Integration:
    mailer = Integration(
        metadata=IntegrationMetadata(slug="mailer", name="Mailer", category="email")
    )

    @mailer.action("send")
    async def send(input, credentials, context):
        if not input.get("to"):
            return ActionResult.failure("MISSING_RECIPIENT", "No recipient given")
        return ActionResult.ok({"queued": True, "to": input["to"]})

    return mailer


def register(services) -> None:
    services.registry.register(build_crm())
    services.registry.register(build_mailer())
    services.credentials.add(
        "crm-demo", ConnectionCredentials(type="api_key", data={"api_key": "demo"})
    )
