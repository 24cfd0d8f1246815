"""Run the re-engagement workflow end to end with in-memory stores."""

import asyncio
import logging
from pathlib import Path

from cadence import (
    CapabilityResolver,
    DefinitionRegistry,
    JobProcessor,
    WorkflowDispatcher,
)
from cadence.jobs import InMemoryJobStore
from cadence.persistence import InMemoryWorkflowStateStore

capabilities = CapabilityResolver()


@capabilities.capability("classify_reply")
async def classify_reply(inputs):
    body = inputs["body"].lower()
    if "unsubscribe" in body:
        return {"sentiment": "unsubscribe", "confidence": 0.99}
    if "later" in body:
        return {"sentiment": "neutral", "confidence": 0.7}
    return {"sentiment": "positive", "confidence": 0.9}


@capabilities.capability("decide_action")
def decide_action(inputs):
    return {"action": "follow_up" if inputs["sentiment"] == "positive" else "nurture"}


@capabilities.capability("send_email")
async def send_email(inputs):
    print(f"📧 Sending {inputs['action']} email to {inputs['email']}")
    return {"message_id": f"msg-{inputs['email']}"}


@capabilities.capability("enroll_sequence")
async def enroll_sequence(inputs):
    print(f"🌱 Enrolling {inputs['email']} in the nurture sequence")
    return {"sequence_id": "nurture-q3"}


async def main():
    """Submit three prospects and drive them to completion."""
    logging.basicConfig(level=logging.INFO)

    registry = DefinitionRegistry()
    registry.load(Path(__file__).parent / "workflows" / "re-engagement.yaml")
    job_store = InMemoryJobStore()
    state_store = InMemoryWorkflowStateStore()

    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    replies = {
        "ada@example.com": "Sounds great, let's talk next week",
        "grace@example.com": "Maybe later in the year",
        "linus@example.com": "Please unsubscribe me",
    }
    receipts = [
        await dispatcher.submit(
            "re-engagement", {"prospect_email": email, "reply_body": body}
        )
        for email, body in replies.items()
    ]

    processor = JobProcessor(job_store, state_store, registry, capabilities)
    await processor.run(lifespan=2.0)

    for receipt in receipts:
        status = await dispatcher.status(receipt.job_id)
        print(
            f"✅ {receipt.job_id}: {status.instance_status.value} "
            f"after {status.completed_steps}"
        )


if __name__ == "__main__":
    asyncio.run(main())
