"""Intent classification port and its implementations."""
from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from driverchat.core.config import Settings, get_settings
from driverchat.core.logging import logger
from driverchat.models.messaging import Intent, IntentAction
from driverchat.services.fleet_state import FleetStateStore, fleet_state_store


class ClassifierUnavailable(Exception):
    """The classifier could not produce an answer (network, timeout, bad payload)."""


# Action codes emitted by the hosted model, including the legacy Portuguese ones.
ACTION_CODES: Dict[str, IntentAction] = {
    "INICIO": IntentAction.START_SHIFT,
    "ENTREGA": IntentAction.DELIVER,
    "FALHA": IntentAction.FAIL,
    "PAUSA": IntentAction.PAUSE_BREAK,
    "RETOMADA": IntentAction.RESUME,
    "RESUMO": IntentAction.SUMMARY,
    "ATRASO": IntentAction.DELAY,
    "NAVEGACAO": IntentAction.NAVIGATE,
    "CONTATO": IntentAction.CONTACT,
    "DESFAZER": IntentAction.UNDO,
    "DETALHES": IntentAction.DETAILS,
    "AJUDA": IntentAction.HELP,
    "SAUDACAO": IntentAction.GREETING,
    "FINALIZAR": IntentAction.FINISH,
    "VENDEDOR": IntentAction.ASK_SALESPERSON,
    "SUPERVISOR": IntentAction.ASK_SUPERVISOR,
    "LISTAR": IntentAction.LIST_PENDING,
    "SINISTRO": IntentAction.INCIDENT,
    "SAIR_ROTA": IntentAction.EXIT_ROUTE,
    "CHEGADA": IntentAction.ARRIVED,
    "INICIO_DESCARGA": IntentAction.UNLOADING_STARTED,
    "FIM_DESCARGA": IntentAction.UNLOADING_ENDED,
    "OUTRO": IntentAction.OTHER,
    "UNKNOWN": IntentAction.UNKNOWN,
}


def parse_intent(payload: Dict[str, Any]) -> Intent:
    """Map a raw classifier payload onto the closed intent set."""
    raw_action = str(payload.get("action") or "").strip()
    action = ACTION_CODES.get(raw_action.upper())
    if action is None:
        normalized = raw_action.lower().replace("_", "-")
        try:
            action = IntentAction(normalized)
        except ValueError:
            action = IntentAction.UNKNOWN

    def _clean(value: Any) -> Optional[str]:
        text = str(value).strip() if value is not None else ""
        return text or None

    return Intent(action=action, identifier=_clean(payload.get("identifier")), reason=_clean(payload.get("reason")))


class IntentClassifier(ABC):
    """Classify a driver's message into an :class:`Intent`.

    Implementations may raise :class:`ClassifierUnavailable`; callers treat
    that the same as an ``unknown`` answer.
    """

    @abstractmethod
    async def classify(
        self,
        tenant_id: str,
        driver_id: str,
        text: Optional[str] = None,
        image_url: Optional[str] = None,
        audio_url: Optional[str] = None,
    ) -> Intent:
        raise NotImplementedError


PROMPT_TEMPLATE = """You are the dispatch assistant of a delivery fleet.
Extract the INTENT and DATA from the driver's message.
{learning}
ACTIONS:
1. INICIO: start the route. ("Leaving now", "Starting Zona Sul")
2. ENTREGA: delivery done. ("Delivered 1020", a photo of the signed receipt)
3. FALHA: delivery failed. ("Closed", "Customer refused", "Nobody answers")
4. PAUSA: temporary stop. ("Going to lunch", "Waiting in the queue", "Need to rest")
5. RETOMADA: back to work. ("Back from lunch", "Moving again")
6. RESUMO: status request. ("How many left?", "Summary")
7. ATRASO: delay notice. ("I'll be 10 min late", "Heavy traffic")
8. NAVEGACAO: directions. ("Send me the next location")
9. CONTATO: customer phone. ("Customer is not answering, what's the number?")
10. DESFAZER: correct a mistake. ("I marked the wrong one", "Undo the last one")
11. DETALHES: invoice data. ("What products?", "What is the value?")
12. AJUDA: help request.
13. SAUDACAO: greetings. ("Good morning", "Hi")
14. FINALIZAR: finish the route. ("Done for today", "Finish route")
15. VENDEDOR: salesperson contact. ("Who sold this invoice?")
16. SUPERVISOR: supervisor contact. ("I need to talk to the base")
17. LISTAR: list of next stops. ("Who is next?", "Send me the list")
18. SINISTRO: accident or serious problem. ("Crashed the truck", "I was robbed", "Flat tire")
19. SAIR_ROTA: leave the started route without delivering anything. ("Started the wrong route")
20. CHEGADA: arrived at the customer. ("Arrived at 1020")
21. INICIO_DESCARGA: unloading started.
22. FIM_DESCARGA: unloading finished.
23. OUTRO: small talk or unrelated subjects.

Answer with JSON only:
{{"action": "<one of the codes above or UNKNOWN>", "identifier": "invoice number, customer name or route name", "reason": "reason, delay time or detail"}}
"""


class OpenAIIntentClassifier(IntentClassifier):
    """Hosted-model classifier over an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        store: FleetStateStore | None = None,
        settings: Settings | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or fleet_state_store
        self.model = self.settings.llm_model
        self.client = client or AsyncOpenAI(
            api_key=self.settings.resolved_openai_api_key(),
            base_url=self.settings.openai_base_url,
            timeout=self.settings.classifier_timeout_seconds,
        )

    def _learning_context(self, tenant_id: str) -> str:
        try:
            examples = self.store.list_learning_phrases(
                tenant_id,
                active_only=True,
                limit=self.settings.classifier_learning_examples,
            )
        except Exception as exc:
            logger.warning("Could not load learned phrases", error=str(exc), tenant_id=tenant_id)
            return ""
        if not examples:
            return ""
        lines = [f'- The phrase "{row["phrase"]}" means {row["intent"]}' for row in examples]
        return "\nLEARNED EXAMPLES (treat them as authoritative):\n" + "\n".join(lines) + "\n"

    def build_messages(
        self,
        tenant_id: str,
        text: Optional[str],
        image_url: Optional[str],
        audio_url: Optional[str],
    ) -> List[Dict[str, Any]]:
        prompt = PROMPT_TEMPLATE.format(learning=self._learning_context(tenant_id))
        message = f'Driver message: "{text or ""}"'
        if audio_url:
            message += f"\n(The driver also sent a voice note: {audio_url})"

        content: List[Dict[str, Any]] = [{"type": "text", "text": message}]
        if image_url:
            content.append({"type": "image_url", "image_url": {"url": image_url}})

        return [
            {"role": "system", "content": prompt},
            {"role": "user", "content": content},
        ]

    async def classify(
        self,
        tenant_id: str,
        driver_id: str,
        text: Optional[str] = None,
        image_url: Optional[str] = None,
        audio_url: Optional[str] = None,
    ) -> Intent:
        messages = self.build_messages(tenant_id, text, image_url, audio_url)
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.settings.llm_temperature,
                max_tokens=self.settings.llm_max_tokens,
                response_format={"type": "json_object"},
            )
            raw = response.choices[0].message.content or ""
            cleaned = raw.replace("```json", "").replace("```", "").strip()
            payload = json.loads(cleaned)
        except Exception as exc:
            logger.error("Intent classification failed", error=str(exc), driver_id=driver_id, model=self.model)
            raise ClassifierUnavailable(str(exc)) from exc

        if not isinstance(payload, dict):
            raise ClassifierUnavailable("Classifier answer is not a JSON object")

        intent = parse_intent(payload)
        logger.info("Intent classified", driver_id=driver_id, action=intent.action.value, identifier=intent.identifier)
        return intent


class KeywordIntentClassifier(IntentClassifier):
    """Deterministic keyword rules for offline and demo use."""

    RULES = [
        (IntentAction.UNLOADING_ENDED, r"\b(finished unloading|unloading (done|finished|ended)|fim (da )?descarga|terminei de descarregar)\b"),
        (IntentAction.UNLOADING_STARTED, r"\b(start(ed|ing)? unloading|unloading|in[ií]cio (da )?descarga|descarregando)\b"),
        (IntentAction.ARRIVED, r"\b(arrived|i'?m here|cheguei)\b"),
        (IntentAction.EXIT_ROUTE, r"\b(exit route|leave route|wrong route|sair da rota)\b"),
        (IntentAction.UNDO, r"\b(undo|mistake|wrong|desfaz\w*|errad[oa])\b"),
        (IntentAction.INCIDENT, r"\b(accident|crash(ed)?|robbed|stolen|theft|flat tire|broke down|breakdown|acidente|roubad[oa]|assalt\w*|pneu|quebrou)\b"),
        (IntentAction.FAIL, r"\b(fail(ed)?|closed|refused|rejected|not home|fechado|recus\w*|devolu\w*|n[aã]o atende)\b"),
        (IntentAction.DELIVER, r"\b(delivered|deliver|dropped off|entreguei|entregue)\b"),
        (IntentAction.FINISH, r"\b(finish(ed)?|done for (the day|today)|end route|finalizar|encerrar|terminei)\b"),
        (IntentAction.RESUME, r"\b(back|resum\w*|voltei|retom\w*)\b"),
        (IntentAction.PAUSE_BREAK, r"\b(lunch|break|pause|rest|sleep|wait(ing)?|queue|almo[cç]\w*|pausa|parada|descanso|fila)\b"),
        (IntentAction.DELAY, r"\b(late|delay\w*|traffic|atras\w*|tr[aâ]nsito)\b"),
        (IntentAction.NAVIGATE, r"\b(navigate|directions|location|how do i get|localiza[cç][aã]o|me leva)\b"),
        (IntentAction.ASK_SALESPERSON, r"\b(salesperson|seller|sales rep|vendedor)\b"),
        (IntentAction.ASK_SUPERVISOR, r"\b(supervisor|manager|boss|chefe)\b"),
        (IntentAction.CONTACT, r"\b(contact|phone|call|telefone|contato)\b"),
        (IntentAction.LIST_PENDING, r"\b(list|who is next|pending|lista|pr[oó]ximos)\b"),
        (IntentAction.SUMMARY, r"\b(summary|status|how many|resumo|quantas)\b"),
        (IntentAction.DETAILS, r"\b(details|products?|value|detalhes|produtos?|valor)\b"),
        (IntentAction.HELP, r"\b(help|ajuda|commands?)\b"),
        (IntentAction.START_SHIFT, r"\b(start(ing)?|leaving|heading out|begin|iniciar|iniciando|saindo)\b"),
        (IntentAction.GREETING, r"^\s*(hi|hello|hey|good (morning|afternoon|evening)|bom dia|boa tarde|boa noite|oi|ol[aá]|opa)\b"),
    ]
    INVOICE_PATTERN = re.compile(r"\b(\d{3,})\b")
    FILLER_WORDS = {"route", "rota", "the", "a", "o", "da", "do", "de", "invoice", "nota", "nf", "to", "at", "on", "for", "my"}
    IDENTIFIER_ACTIONS = {
        IntentAction.START_SHIFT,
        IntentAction.DELIVER,
        IntentAction.FAIL,
        IntentAction.DETAILS,
        IntentAction.CONTACT,
        IntentAction.ASK_SALESPERSON,
        IntentAction.NAVIGATE,
        IntentAction.ARRIVED,
        IntentAction.UNLOADING_STARTED,
        IntentAction.UNLOADING_ENDED,
    }
    REASON_ACTIONS = {IntentAction.FAIL, IntentAction.PAUSE_BREAK, IntentAction.DELAY, IntentAction.INCIDENT}

    def __init__(self) -> None:
        self._compiled = [(action, re.compile(pattern, re.IGNORECASE)) for action, pattern in self.RULES]

    def _identifier(self, text: str, match: re.Match) -> Optional[str]:
        invoice = self.INVOICE_PATTERN.search(text)
        if invoice:
            return invoice.group(1)
        remainder = (text[: match.start()] + " " + text[match.end():]).strip(" ,.!?")
        words = [word for word in remainder.split() if word.lower().strip(",.!?") not in self.FILLER_WORDS]
        cleaned = " ".join(words).strip(" ,.!?")
        return cleaned or None

    async def classify(
        self,
        tenant_id: str,
        driver_id: str,
        text: Optional[str] = None,
        image_url: Optional[str] = None,
        audio_url: Optional[str] = None,
    ) -> Intent:
        body = (text or "").strip()
        if not body:
            if image_url:
                return Intent(action=IntentAction.DELIVER)
            return Intent.unknown()

        for action, pattern in self._compiled:
            match = pattern.search(body)
            if not match:
                continue
            identifier = self._identifier(body, match) if action in self.IDENTIFIER_ACTIONS else None
            reason = body if action in self.REASON_ACTIONS else None
            return Intent(action=action, identifier=identifier, reason=reason)
        return Intent.unknown()


def build_intent_classifier(settings: Settings | None = None) -> IntentClassifier:
    settings = settings or get_settings()
    if settings.resolved_openai_api_key() is None:
        logger.warning("Running keyword intent classifier - no LLM provider configured")
        return KeywordIntentClassifier()
    return OpenAIIntentClassifier(settings=settings)
