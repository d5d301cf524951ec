"""
Prompt Builder - system prompts for replies, follow-ups and template variables
"""
from dataclasses import dataclass
from typing import Any, Sequence

from app.core.config import settings
from app.domain.services.example_formatter import format_examples

KNOWLEDGE_SUMMARY_CHARS = 300
PROMPT_EXAMPLE_MAX_MESSAGES = 6


@dataclass
class BusinessProfile:
    name: str
    description: str
    language: str

    @classmethod
    def from_settings(cls) -> "BusinessProfile":
        return cls(
            name=settings.BUSINESS_NAME,
            description=settings.BUSINESS_DESCRIPTION,
            language=settings.BUSINESS_LANGUAGE,
        )


def format_knowledge(entries: Sequence[Any]) -> str:
    return "\n\n".join(
        f"Q: {entry.title}\nA: {entry.summary or entry.answer[:KNOWLEDGE_SUMMARY_CHARS]}"
        for entry in entries
    )


def build_system_prompt(
    business: BusinessProfile,
    transition_context: str,
    knowledge: Sequence[Any] = (),
    examples: Sequence[Any] = (),
) -> str:
    knowledge_context = format_knowledge(knowledge) or "No specific knowledge retrieved for this query."
    examples_context = (
        format_examples(examples, max_messages=PROMPT_EXAMPLE_MAX_MESSAGES, include_scenario=True)
        if examples else ""
    )
    examples_guideline = (
        "\n- Study the reference examples above and match their conversational style and approach"
        if examples else ""
    )

    return f"""# Role
You are a sales representative for {business.name}. {business.description}

# Language
Always respond in {business.language}. Be friendly, professional, and helpful.

{transition_context}

# Relevant Knowledge
{knowledge_context}

{examples_context}

# Response Format
You MUST respond with a JSON object in a code block. The format is:
```json
{{
  "responses": [
    "First short message to the user in {business.language}",
    "Second short message"
  ],
  "transition": {{
    "to": "state_name",
    "reason": "Brief explanation of why transitioning",
    "confidence": 0.8
  }},
  "escalation": {{
    "should_escalate": false,
    "reason": "ai_uncertainty",
    "confidence": 0.0,
    "summary": "Brief context for the human agent"
  }},
  "extracted_data": {{
    "user_name": "if user mentioned their name",
    "email": "if user provided email",
    "has_experience": true,
    "interest_level": "high",
    "concerns": ["any concerns they raised"]
  }},
  "is_uncertain": false
}}
```

Rules for the JSON response:
- "responses" is REQUIRED - 2 to 4 short messages, sent to the user one after another
- "transition" is OPTIONAL - only include if you detect completion signals and recommend moving to a new state
- "escalation" is OPTIONAL - only include when the user should be handed to a human agent
- "extracted_data" is OPTIONAL - only include fields where you extracted new information
- "is_uncertain" should be true if you're not confident in your response and a human might help better

# Guidelines
- Be concise but warm (2-4 sentences typically)
- Use emojis sparingly (1-2 per message max)
- Ask clarifying questions when needed
- Never make up information - use the knowledge provided
- If you don't know something, set is_uncertain to true
- Guide the conversation toward registration when appropriate{examples_guideline}

# Prohibited
- Never discuss competitors negatively
- Never guarantee profits or returns
- Never share internal processes or pricing structures not in the knowledge base
- Never pretend to be human if directly asked"""


def build_followup_prompt(
    business: BusinessProfile,
    state: str,
    objective: str,
    context: dict | None = None,
) -> str:
    """Prompt for one proactive message after the customer went quiet"""
    known_facts = "\n".join(f"- {k}: {v}" for k, v in (context or {}).items()) or "- (nothing yet)"
    return f"""# Role
You are a sales representative for {business.name}. {business.description}

# Language
Always respond in {business.language}.

# Task
The customer stopped replying. Write ONE short, friendly follow-up message that
re-opens the conversation where it was left.

Current stage: {state}
Stage objective: {objective}

Known facts about the customer:
{known_facts}

# Rules
- One message, at most 2 sentences
- Do not repeat your last message word for word
- No pressure, no guarantees of profit
- Reply with the message text only, no JSON, no quotes"""


def build_variable_prompt(business: BusinessProfile, instruction: str) -> str:
    """Prompt resolving a single template variable from the conversation"""
    return f"""You fill in one placeholder of a message template for {business.name}.
Answer in {business.language} with the value only: no explanations, no quotes,
at most a few words.

Instruction: {instruction}"""
