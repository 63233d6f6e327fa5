"""Abandoned-cart recovery with a branch and a webhook, run by the worker loop.

Start a local receiver first, e.g. ``python -m http.server 8000``; a
405 from it fails the enrollment, which is also shown below.
"""

import asyncio

from nurture import Collaborators, NurtureRuntime, TriggerType, Workflow, WorkflowStatus
from nurture.collaborators import DryRunDelivery, HttpxWebhookCaller, InMemoryContactStore
from nurture.config import NurtureConfig, SchedulerConfig
from nurture.persistence import InMemoryEnrollmentRepository
from nurture.queues import InMemoryWorkQueue

STEPS = [
    {"id": "start", "type": "trigger", "config": {"event": "cart_abandoned"}, "next": "big-cart"},
    {
        "id": "big-cart",
        "type": "condition",
        "config": {
            "conditions": [{"field": "trigger.cart_total", "operator": "greater_than", "value": 50}],
            "trueBranch": "reminder",
            "falseBranch": "tag",
        },
    },
    {
        "id": "reminder",
        "type": "send_email",
        "config": {
            "subject": "{{ first_name }}, you left {{ cart_total }} EUR behind",
            "content": "<p>Your cart is waiting.</p>",
        },
        "next": "notify",
    },
    {
        "id": "notify",
        "type": "webhook",
        "config": {"url": "http://localhost:8000/cart-reminded", "method": "POST"},
    },
    {"id": "tag", "type": "add_tag", "config": {"tag": "small-cart"}},
]


async def main():
    contacts = InMemoryContactStore({"contact-7": {"email": "grace@example.com", "first_name": "Grace"}})
    runtime = NurtureRuntime(
        repository=InMemoryEnrollmentRepository(),
        queue=InMemoryWorkQueue(),
        collaborators=Collaborators(
            delivery=DryRunDelivery(), contacts=contacts, webhooks=HttpxWebhookCaller(timeout=2.0)
        ),
        config=NurtureConfig(scheduler=SchedulerConfig(poll_interval_seconds=0.1)),
    )
    workflow = Workflow(
        name="Abandoned cart",
        trigger_type=TriggerType.ABANDONED_CART,
        status=WorkflowStatus.ACTIVE,
        steps=STEPS,
    )
    await runtime.service.save_workflow(workflow)
    [enrollment] = await runtime.dispatcher.trigger_workflows(
        TriggerType.ABANDONED_CART, "contact-7", {"cart_total": 80}
    )

    async with runtime:
        await runtime.run(lifespan=2)

    final = await runtime.repository.get_enrollment(enrollment.id)
    print(f"Enrollment {final.id}: {final.status.value} at step {final.current_step_id}")
    if final.failure_reason:
        print(f"Failure: {final.failure_reason}")
    print(await runtime.scheduler.stats())


if __name__ == "__main__":
    asyncio.run(main())
