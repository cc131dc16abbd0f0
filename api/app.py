"""Application wiring: services, event subscriptions and the FastAPI app."""

import logging
from concurrent.futures import Executor, ThreadPoolExecutor

from fastapi import FastAPI

from api.actions import create_actions_router
from api.changes import create_changes_router
from api.data import create_data_router
from api.errors import register_error_handlers
from api.middleware import IdentityMiddleware, IdentityProvider, RequestIDMiddleware
from api.triage import create_triage_router
from clients.llm_client import LLMClient
from clients.postgres_client import PostgresClient
from clients.push_client import ExpoPushClient
from clients.valkey_client import ValkeyClient
from clients.vault_client import get_database_url, get_push_config, get_valkey_url
from core.audit import AuditLogger
from core.event_bus import EventBus
from core.handlers.push_notification_handler import PUSHED_EVENTS, handle_lifecycle_push
from core.services.change_notifier import ChangeNotifier, InMemoryChangeBroker, ValkeyChangeBroker
from core.services.job_chat_service import JobChatService
from core.services.lifecycle_engine import LifecycleEngine
from core.stores import (
    EngagementStore,
    InMemoryBackend,
    InMemoryEngagementStore,
    InMemoryJobMessageStore,
    InMemoryRequestStore,
    JobMessageStore,
    RequestStore,
)
from core.stores.push_tokens import PushTokenDirectory
from core.triage.classifier import LLMTriageClassifier
from core.triage.conversation import AdvisoryService
from core.triage.session_store import InMemoryTriageSessionStore, TriageSessionStore

logger = logging.getLogger(__name__)

PUSH_WORKERS = 4


def wire_services(
    requests,
    engagements,
    messages,
    broker,
    sessions,
    classifier,
    push_sink=None,
    push_executor: Executor | None = None,
) -> dict:
    """
    Assemble the services dict the routers take.

    The notifier and the push handler subscribe to the engine's event bus.
    Pushes run on push_executor when one is given, inline otherwise.
    """
    event_bus = EventBus()
    engine = LifecycleEngine(requests, engagements, event_bus)

    notifier = ChangeNotifier(broker)
    notifier.register(event_bus)

    if push_sink is not None:
        event_bus.subscribe_many(PUSHED_EVENTS, handle_lifecycle_push(push_sink, push_executor))

    return {
        "engine": engine,
        "event_bus": event_bus,
        "notifier": notifier,
        "advisory": AdvisoryService(sessions, classifier, engine),
        "job_chat": JobChatService(messages, engine, event_bus),
    }


def build_services() -> dict:
    """Production services: Postgres, Valkey, Anthropic and Expo, configured from Vault."""
    postgres = PostgresClient(get_database_url())
    valkey = ValkeyClient(get_valkey_url())
    audit = AuditLogger(postgres)

    push = ExpoPushClient(
        PushTokenDirectory(postgres).get_push_token,
        access_token=get_push_config()["access_token"],
    )

    return wire_services(
        requests=RequestStore(postgres, audit),
        engagements=EngagementStore(postgres, audit),
        messages=JobMessageStore(postgres),
        broker=ValkeyChangeBroker(valkey),
        sessions=TriageSessionStore(valkey),
        classifier=LLMTriageClassifier(LLMClient()),
        push_sink=push,
        push_executor=ThreadPoolExecutor(max_workers=PUSH_WORKERS, thread_name_prefix="push"),
    )


def build_in_memory_services(classifier, push_sink=None) -> dict:
    """Single-process services with no external storage. For tests and local runs."""
    backend = InMemoryBackend()
    return wire_services(
        requests=InMemoryRequestStore(backend),
        engagements=InMemoryEngagementStore(backend),
        messages=InMemoryJobMessageStore(backend),
        broker=InMemoryChangeBroker(),
        sessions=InMemoryTriageSessionStore(),
        classifier=classifier,
        push_sink=push_sink,
    )


def create_app(services: dict, identity_provider: IdentityProvider) -> FastAPI:
    """FastAPI app with identity, request ids, error handlers and all routers under /api."""
    app = FastAPI(title="Plumberly marketplace")
    app.add_middleware(IdentityMiddleware, identity_provider=identity_provider)
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)

    app.include_router(create_data_router(services), prefix="/api")
    app.include_router(create_actions_router(services), prefix="/api")
    app.include_router(create_triage_router(services), prefix="/api")
    app.include_router(create_changes_router(services), prefix="/api")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    logger.info("API app created")
    return app
