"""Wiring for the checkout core, shared by the HTTP app and the CLI."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import async_sessionmaker

from .catalog import Catalog, JsonCatalog
from .ledger import AttemptLedger
from .notifications import NotificationDispatcher, Notifier, build_notifier
from .orchestrator import CheckoutOrchestrator
from .payments.base import ProviderAdapter
from .payments.factory import build_adapters
from .reconciler import WebhookReconciler
from .settings import Settings
from .states import Rail


@dataclass
class CheckoutServices:
    ledger: AttemptLedger
    orchestrator: CheckoutOrchestrator
    reconciler: WebhookReconciler
    dispatcher: NotificationDispatcher
    adapters: Mapping[Rail, ProviderAdapter]


def build_services(
    cfg: Settings,
    session_factory: async_sessionmaker,
    *,
    catalog: Catalog | None = None,
    adapters: Mapping[Rail, ProviderAdapter] | None = None,
    notifier: Notifier | None = None,
) -> CheckoutServices:
    adapters = adapters if adapters is not None else build_adapters(cfg)
    ledger = AttemptLedger(session_factory)
    dispatcher = NotificationDispatcher(
        notifier or build_notifier(cfg.NOTIFY_WEBHOOK_URL, cfg.NOTIFY_TIMEOUT_SECONDS)
    )
    orchestrator = CheckoutOrchestrator(
        ledger=ledger,
        catalog=catalog or JsonCatalog(cfg.catalog_path, default_currency=cfg.DEFAULT_CURRENCY),
        adapters=adapters,
        dispatcher=dispatcher,
        provider_timeout=cfg.PROVIDER_TIMEOUT_SECONDS,
        sweep_batch_size=cfg.EXPIRY_SWEEP_BATCH_SIZE,
        abandon_after=timedelta(hours=cfg.MANUAL_INVOICE_ABANDON_AFTER_HOURS),
    )
    reconciler = WebhookReconciler(ledger=ledger, orchestrator=orchestrator, adapters=adapters)
    return CheckoutServices(
        ledger=ledger,
        orchestrator=orchestrator,
        reconciler=reconciler,
        dispatcher=dispatcher,
        adapters=adapters,
    )
