"""
Email Workflow Example

This example demonstrates:
1. A typed state schema with a structured classification model
2. Parallel documentation search and bug ticketing
3. Command routing to a human review step
4. Human-in-the-loop approval with interrupt/resume
5. Collaborators (generate, search, create_ticket) passed into nodes

The workflow:
    read_email -> classify_intent -> (search_documentation, bug_tracking)
        -> write_response -> (human_review | send_reply) -> END

Collaborators are stubbed. With OPENAI_API_KEY set, classification and drafting
go through a mirascope call instead.
"""

import asyncio
import os
import uuid
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from stepgraph import (
    Graph,
    StateSchema,
    START,
    END,
    Command,
    ResumeCommand,
    interrupt,
    append,
    configure_logging,
)
from stepgraph.core.collaborators import CreateTicket, Generate, MirascopeGenerator, Search
from stepgraph.core.graph.viz import GraphVisualizer
from stepgraph.core.logging import LogComponent, get_logger

logger = get_logger(LogComponent.WORKFLOW)


class EmailClassification(BaseModel):
    """Structured classification of a customer email."""
    intent: Literal["question", "bug", "billing", "feature", "complex"]
    urgency: Literal["low", "medium", "high", "critical"]
    topic: str = Field(..., description="Short topic label")
    summary: str = Field(..., description="One-line summary")


class EmailState:
    email_content: str = ""
    sender_email: str = ""
    email_id: str = ""
    classification: Optional[EmailClassification] = None
    ticket_id: Optional[str] = None
    search_results: Annotated[List[str], append] = []
    customer_history: Optional[Dict[str, Any]] = None
    draft_response: Optional[str] = None


# ---------------------------------------------------------------------------
# Stub collaborators
# ---------------------------------------------------------------------------

async def stub_generate(prompt: str):
    if prompt.startswith("Analyze"):
        text = prompt.lower()
        if "charged" in text or "subscription" in text:
            return EmailClassification(intent="billing", urgency="critical", topic="billing", summary="Double charge")
        if "won't" in text or "broken" in text:
            return EmailClassification(intent="bug", urgency="high", topic="product defect", summary="Product defect")
        return EmailClassification(intent="question", urgency="low", topic="general", summary="General question")
    return "Thanks for reaching out. We are looking into this and will follow up shortly."


async def stub_search(query: str) -> List[str]:
    return [
        f"Documentation: basic information about {query}",
        f"FAQ entry: common questions related to {query}",
    ]


async def stub_create_ticket() -> str:
    return f"BUG_{uuid.uuid4().hex[:8]}"


def mirascope_generator() -> MirascopeGenerator:
    from mirascope.core import openai

    @openai.call("gpt-4o-mini", response_model=EmailClassification)
    def classify(prompt: str) -> str:
        return prompt

    @openai.call("gpt-4o-mini")
    def draft(prompt: str) -> str:
        return prompt

    return MirascopeGenerator(lambda prompt: classify(prompt) if prompt.startswith("Analyze") else draft(prompt))


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

def build_graph(generate: Generate, search: Search, create_ticket: CreateTicket) -> Graph:

    def read_email(state):
        logger.info(f"Processing email from: {state['sender_email']}")
        return {}

    async def classify_intent(state):
        prompt = (
            "Analyze this customer email and classify it:\n\n"
            f"Email: {state['email_content']}\nFrom: {state['sender_email']}\n\n"
            "Provide classification, including intent, urgency, topic, and summary."
        )
        try:
            classification = await generate(prompt)
        except Exception as e:
            logger.warning(f"Classification failed, using fallback: {e}")
            classification = EmailClassification(
                intent="question", urgency="medium", topic="general inquiry",
                summary="Unable to classify email automatically",
            )
        return {"classification": classification}

    async def search_documentation(state):
        classification = state["classification"]
        return {"search_results": await search(f"{classification.intent} {classification.topic}")}

    async def bug_tracking(state):
        ticket_id = await create_ticket()
        logger.info(f"Created ticket: {ticket_id}")
        return {"ticket_id": ticket_id}

    async def write_response(state):
        classification = state["classification"]
        docs = "\n".join(f"- {doc}" for doc in state["search_results"])
        prompt = (
            f"Draft a response to this customer email:\n{state['email_content']}\n\n"
            f"Email intent: {classification.intent}\nUrgency level: {classification.urgency}\n\n"
            f"Relevant documentation:\n{docs}\n\nBe professional, helpful and brief."
        )
        draft = await generate(prompt)
        needs_review = classification.urgency in ("high", "critical") or classification.intent == "complex"
        return Command(
            update={"draft_response": str(draft)},
            goto="human_review" if needs_review else "send_reply",
        )

    def human_review(state):
        classification = state["classification"]
        decision = interrupt({
            "email_id": state["email_id"],
            "original_email": state["email_content"],
            "draft_response": state["draft_response"],
            "urgency": classification.urgency,
            "intent": classification.intent,
            "action": "Please review and approve/edit this response",
        })
        if isinstance(decision, dict) and not decision.get("approved", True):
            return Command(goto=END)
        edited = decision.get("edited_response") if isinstance(decision, dict) else None
        return Command(update={"draft_response": edited or state["draft_response"]}, goto="send_reply")

    def send_reply(state):
        logger.info(f"Sending reply: {state['draft_response'][:60]}...")
        return {}

    graph = Graph(state_schema=StateSchema.from_class(EmailState))
    graph.add_node("read_email", read_email)
    graph.add_node("classify_intent", classify_intent)
    graph.add_node("search_documentation", search_documentation)
    graph.add_node("bug_tracking", bug_tracking)
    graph.add_node("write_response", write_response, ends=["human_review", "send_reply"])
    graph.add_node("human_review", human_review, ends=["send_reply", END])
    graph.add_node("send_reply", send_reply)

    graph.add_edge(START, "read_email")
    graph.add_edge("read_email", "classify_intent")
    graph.add_edge("classify_intent", "search_documentation")
    graph.add_edge("classify_intent", "bug_tracking")
    graph.add_edge("search_documentation", "write_response")
    graph.add_edge("bug_tracking", "write_response")
    graph.add_edge("send_reply", END)
    return graph


async def main():
    configure_logging()
    generate: Generate = mirascope_generator() if os.getenv("OPENAI_API_KEY") else stub_generate
    graph = build_graph(generate, stub_search, stub_create_ticket)
    print(GraphVisualizer(graph).render_graph())
    app = graph.compile()

    emails = [
        "I was charged two times for my subscription! This is urgent!",
        "I was wondering if this was available in blue?",
        "The tire won't stay on the car!",
    ]
    for i, content in enumerate(emails):
        thread_id = f"customer_{i}"
        result = await app.invoke(
            {"email_content": content, "sender_email": "customer@example.com", "email_id": f"email_{i}"},
            thread_id=thread_id,
        )
        if result.interrupted:
            review = result.interrupts[0].value
            logger.info(f"Draft ready for review ({review['urgency']}): {review['draft_response'][:60]}...")
            result = await app.invoke(ResumeCommand(resume={"approved": True}), thread_id=thread_id)
        logger.info(f"{thread_id}: {result.status.value}, ticket={result.values['ticket_id']}")


if __name__ == "__main__":
    asyncio.run(main())
