from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_fleet"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["FLEET_DB_PATH"] = str(TMP / "fleet_state.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["DEFAULT_MESSAGING_PROVIDER"] = "log"
os.environ["WEBHOOK_CLIENT_TOKEN"] = "test-webhook-token"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from driverchat.core.config import Settings  # noqa: E402
from driverchat.models.messaging import IntentAction  # noqa: E402
from driverchat.services.fleet_state import FleetStateStore  # noqa: E402
from driverchat.services.intent_classifier import (  # noqa: E402
    ClassifierUnavailable,
    KeywordIntentClassifier,
    OpenAIIntentClassifier,
    build_intent_classifier,
    parse_intent,
)


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(completions: FakeCompletions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _classifier(tmp_path, completions):
    store = FleetStateStore(db_path=str(tmp_path / "classifier.db"))
    settings = Settings(openai_api_key="sk-test")
    return store, OpenAIIntentClassifier(store=store, settings=settings, client=_client(completions))


@pytest.mark.parametrize(
    "payload, action",
    [
        ({"action": "ENTREGA", "identifier": "1020"}, IntentAction.DELIVER),
        ({"action": "inicio_descarga"}, IntentAction.UNLOADING_STARTED),
        ({"action": "SAIR_ROTA"}, IntentAction.EXIT_ROUTE),
        ({"action": "ask-supervisor"}, IntentAction.ASK_SUPERVISOR),
        ({"action": "list_pending"}, IntentAction.LIST_PENDING),
        ({"action": "DANCE"}, IntentAction.UNKNOWN),
        ({}, IntentAction.UNKNOWN),
    ],
)
def test_parse_intent_maps_codes_onto_closed_set(payload, action):
    assert parse_intent(payload).action == action


def test_parse_intent_blanks_become_none():
    intent = parse_intent({"action": "FALHA", "identifier": "  ", "reason": " closed "})
    assert intent.identifier is None
    assert intent.reason == "closed"


def test_openai_classifier_parses_json_answer(tmp_path):
    answer = json.dumps({"action": "FALHA", "identifier": "1020", "reason": "store closed"})
    completions = FakeCompletions(content=f"```json\n{answer}\n```")
    _, classifier = _classifier(tmp_path, completions)

    intent = asyncio.run(classifier.classify("acme", "DRV-0001", text="1020 closed"))

    assert intent.action == IntentAction.FAIL
    assert intent.identifier == "1020"
    assert intent.reason == "store closed"
    request = completions.requests[0]
    assert request["response_format"] == {"type": "json_object"}
    assert request["model"] == classifier.model


def test_openai_classifier_includes_curated_phrases_for_tenant_only(tmp_path):
    completions = FakeCompletions(content='{"action": "INICIO"}')
    store, classifier = _classifier(tmp_path, completions)
    store.add_learning_phrase("acme", phrase="bora que bora", intent="INICIO", is_active=True)
    store.add_learning_phrase("acme", phrase="sei la", intent="REVISAR", is_active=False)
    store.add_learning_phrase("other", phrase="partiu", intent="INICIO", is_active=True)

    asyncio.run(classifier.classify("acme", "DRV-0001", text="bora que bora"))

    system_prompt = completions.requests[0]["messages"][0]["content"]
    assert "bora que bora" in system_prompt
    assert "sei la" not in system_prompt
    assert "partiu" not in system_prompt


def test_openai_classifier_attaches_image(tmp_path):
    completions = FakeCompletions(content='{"action": "ENTREGA"}')
    _, classifier = _classifier(tmp_path, completions)

    intent = asyncio.run(classifier.classify("acme", "DRV-0001", image_url="https://cdn/receipt.jpg"))

    assert intent.action == IntentAction.DELIVER
    content = completions.requests[0]["messages"][1]["content"]
    assert content[1] == {"type": "image_url", "image_url": {"url": "https://cdn/receipt.jpg"}}


@pytest.mark.parametrize(
    "completions",
    [
        FakeCompletions(error=RuntimeError("connection reset")),
        FakeCompletions(content="not json at all"),
        FakeCompletions(content="[1, 2]"),
    ],
)
def test_openai_classifier_failures_raise_unavailable(tmp_path, completions):
    _, classifier = _classifier(tmp_path, completions)

    with pytest.raises(ClassifierUnavailable):
        asyncio.run(classifier.classify("acme", "DRV-0001", text="hello"))


@pytest.mark.parametrize(
    "text, action, identifier",
    [
        ("delivered 1020", IntentAction.DELIVER, "1020"),
        ("1020 failed, store closed", IntentAction.FAIL, "1020"),
        ("start zona sul", IntentAction.START_SHIFT, "zona sul"),
        ("arrived at 1021", IntentAction.ARRIVED, "1021"),
        ("finished unloading", IntentAction.UNLOADING_ENDED, None),
        ("going to lunch", IntentAction.PAUSE_BREAK, None),
        ("back from lunch", IntentAction.RESUME, None),
        ("finish route", IntentAction.FINISH, None),
        ("summary", IntentAction.SUMMARY, None),
        ("good morning", IntentAction.GREETING, None),
        ("flat tire on the highway", IntentAction.INCIDENT, None),
        ("blorp", IntentAction.UNKNOWN, None),
    ],
)
def test_keyword_classifier_rules(text, action, identifier):
    intent = asyncio.run(KeywordIntentClassifier().classify("acme", "DRV-0001", text=text))

    assert intent.action == action
    if identifier is not None:
        assert intent.identifier == identifier


def test_keyword_classifier_treats_bare_photo_as_delivery():
    intent = asyncio.run(KeywordIntentClassifier().classify("acme", "DRV-0001", image_url="https://cdn/x.jpg"))
    assert intent.action == IntentAction.DELIVER


def test_build_intent_classifier_falls_back_to_keywords_without_key():
    assert isinstance(build_intent_classifier(Settings(openai_api_key="")), KeywordIntentClassifier)
    assert isinstance(build_intent_classifier(Settings(openai_api_key="sk-test")), OpenAIIntentClassifier)
