"""Register a workflow, enqueue a run and process it with an in-process worker."""

import asyncio
import logging

from conduit import Services

from integrations_example import register

WELCOME_FLOW = {
    "version": "1.0",
    "trigger": {"integration": "crm", "trigger": "contact_created"},
    "steps": [
        {
            "id": "upsert",
            "integration": "crm",
            "action": "upsert_contact",
            "connectionId": "crm-demo",
            "input": {
                "mappings": [
                    {
                        "source": "$.contact.email",
                        "target": "$.email",
                        "transform": {"type": "to-lowercase"},
                    },
                    {"source": "$.contact.name", "target": "$.name"},
                ]
            },
        },
        {
            "id": "welcome",
            "integration": "mailer",
            "action": "send",
            "input": {
                "mappings": [
                    {"source": "$.email", "target": "$.to"},
                    {
                        "source": "$.name",
                        "target": "$.subject",
                        "transform": {
                            "type": "template",
                            "config": {"template": "Welcome aboard, {{name}}!"},
                        },
                    },
                ],
                "static": {"template": "welcome"},
            },
            "retry": {"maxAttempts": 3, "delay": "exponential"},
        },
    ],
}


async def main():
    logging.basicConfig(level=logging.INFO)

    async with Services.create() as services:
        register(services)

        dispatcher = services.dispatcher()
        await dispatcher.register_workflow("welcome-flow", WELCOME_FLOW)
        job_id = await dispatcher.enqueue_workflow(
            "welcome-flow",
            "org-demo",
            {"contact": {"email": "Ada@Example.com", "name": "Ada"}},
            "webhook",
        )
        print(f"Job enqueued: {job_id}")

        worker = services.worker(poll_interval=0.1)
        await worker.run(lifespan=1.0)

        for execution in await services.repository.list_executions():
            print(f"{execution.id}: {execution.status.value} -> {execution.output_payload}")


if __name__ == "__main__":
    asyncio.run(main())
