"""Simple example: a welcome series driven by a fake clock."""

import asyncio
from datetime import timedelta

from nurture import Collaborators, NurtureRuntime, TriggerType, Workflow, WorkflowStatus
from nurture.collaborators import DryRunDelivery, InMemoryContactStore
from nurture.persistence import InMemoryEnrollmentRepository
from nurture.queues import InMemoryWorkQueue


async def main():
    """Enroll one contact and run the series to completion."""
    delivery = DryRunDelivery()
    contacts = InMemoryContactStore({"contact-1": {"email": "ada@example.com", "first_name": "Ada"}})
    runtime = NurtureRuntime(
        repository=InMemoryEnrollmentRepository(),
        queue=InMemoryWorkQueue(),
        collaborators=Collaborators(delivery=delivery, contacts=contacts),
    )

    workflow = Workflow(
        name="Welcome series",
        trigger_type=TriggerType.WELCOME,
        status=WorkflowStatus.ACTIVE,
        steps=[
            {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "hello"},
            {
                "id": "hello",
                "type": "send_email",
                "config": {"subject": "Welcome, {{ first_name }}!", "content": "<p>Glad you're here.</p>"},
                "next": "wait",
            },
            {"id": "wait", "type": "delay", "config": {"duration": 2, "unit": "days"}, "next": "tips"},
            {
                "id": "tips",
                "type": "send_email",
                "config": {"subject": "Three tips for {{ first_name }}", "content": "<p>...</p>"},
            },
        ],
    )
    result = await runtime.service.save_workflow(workflow)
    print(f"Saved workflow {workflow.id} (valid: {result.is_valid})")

    [enrollment] = await runtime.dispatcher.trigger_workflows("welcome", "contact-1")
    now = enrollment.enrolled_at

    # Run everything due now, then jump past the delay
    await runtime.scheduler.drain(now)
    await runtime.scheduler.drain(now + timedelta(days=2))

    final = await runtime.repository.get_enrollment(enrollment.id)
    print(f"Enrollment {final.id}: {final.status.value}")
    print(f"Emails sent: {[m['subject'] for m in delivery.sent]}")


if __name__ == "__main__":
    asyncio.run(main())
