"""
Escalation Service - deterministic hand-off triggers and canned replies

Runs before any model call: a customer asking for a person, or accusing the
business of fraud, goes straight to a human.
"""
from typing import Optional

from app.domain.schemas import EscalationResult, ModelEscalation

EXPLICIT_REQUEST_PATTERNS = (
    "hablar con humano",
    "hablar con un humano",
    "persona real",
    "agente",
    "representante",
    "quiero hablar con alguien",
    "necesito ayuda humana",
    "soporte humano",
)

FRUSTRATION_PATTERNS = ("estafa", "scam", "fraude", "robo", "mierda", "basura")

ESCALATION_RESPONSES = {
    "explicit_request": "¡Por supuesto! Te conecto con uno de nuestros asesores. Un momento por favor. 🙋‍♂️",
    "frustration": "Entiendo tu frustración y quiero ayudarte. Te conecto con un asesor que podrá asistirte mejor. Un momento.",
    "high_value": "Para brindarte la mejor atención personalizada, te conecto con uno de nuestros asesores senior.",
    "technical_issue": "Veo que tienes un problema técnico. Te conecto con soporte especializado.",
    "repeated_confusion": "Parece que no estoy siendo claro. Déjame conectarte con un asesor que pueda ayudarte mejor.",
    "ai_uncertainty": "Para darte la mejor respuesta, te conecto con uno de nuestros expertos.",
}


def detect_escalation(text: str | None) -> Optional[EscalationResult]:
    """First matching trigger, explicit requests before frustration"""
    content = (text or "").lower()
    if not content:
        return None

    for pattern in EXPLICIT_REQUEST_PATTERNS:
        if pattern in content:
            return EscalationResult(
                should_escalate=True,
                reason="explicit_request",
                priority="immediate",
                confidence=1.0,
            )

    for pattern in FRUSTRATION_PATTERNS:
        if pattern in content:
            return EscalationResult(
                should_escalate=True,
                reason="frustration",
                priority="immediate",
                confidence=0.9,
            )

    return None


def from_model_recommendation(
    recommendation: ModelEscalation | None,
    threshold: float,
) -> Optional[EscalationResult]:
    """Escalation suggested in the model's reply, if confident enough"""
    if recommendation is None or not recommendation.should_escalate:
        return None
    if recommendation.confidence < threshold:
        return None
    return EscalationResult(
        should_escalate=True,
        reason=recommendation.reason,
        priority="high",
        confidence=recommendation.confidence,
        summary=recommendation.summary,
    )


def escalation_response_text(reason: str) -> str:
    return ESCALATION_RESPONSES.get(reason, ESCALATION_RESPONSES["explicit_request"])
