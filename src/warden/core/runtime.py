from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from warden.core.approvals.registry import RequestRegistry
from warden.core.approvals.store import ApproverStore, ConfigurationStore, CriticalActionStore, RequestStore
from warden.core.escalation.engine import EscalationEngine
from warden.core.events.outbox import EventOutbox
from warden.core.history.ledger import HistoryLedger
from warden.core.ledger.ledger import ExecutionLedger
from warden.core.notifications.dispatcher import NotificationDispatcher
from warden.core.notifications.gateway import NotificationGateway, build_notification_router
from warden.core.rules.defaults import seed_default_rules
from warden.core.rules.store import RuleStore
from warden.core.settings import EngineSettings, load_settings


@dataclass
class Runtime:
    settings: EngineSettings
    requests: RequestStore
    approvers: ApproverStore
    actions: CriticalActionStore
    configurations: ConfigurationStore
    rules: RuleStore
    history: HistoryLedger
    ledger: ExecutionLedger
    outbox: EventOutbox
    dispatcher: NotificationDispatcher
    registry: RequestRegistry
    engine: EscalationEngine

    def close(self) -> None:
        self.dispatcher.shutdown(wait=True)


def build_runtime(
    settings: EngineSettings | None = None,
    gateway: NotificationGateway | None = None,
    state_dir: str | Path | None = None,
) -> Runtime:
    active = settings or load_settings()
    if state_dir is not None:
        active = active.model_copy(update={"state_dir": Path(state_dir)})
    root = Path(active.state_dir)
    root.mkdir(parents=True, exist_ok=True)

    requests = RequestStore(root)
    approvers = ApproverStore(root)
    configurations = ConfigurationStore(root)
    rules = RuleStore(root)
    history = HistoryLedger(root)
    ledger = ExecutionLedger(root)
    outbox = EventOutbox(root)
    dispatcher = NotificationDispatcher(
        gateway=gateway or build_notification_router(active),
        ledger=ledger,
        outbox=outbox,
        run_async=active.notify_async and not active.test_mode,
    )
    registry = RequestRegistry(requests, approvers, configurations, history, outbox, dispatcher)
    if active.seed_default_rules:
        seed_default_rules(rules)

    return Runtime(
        settings=active,
        requests=requests,
        approvers=approvers,
        actions=CriticalActionStore(root),
        configurations=configurations,
        rules=rules,
        history=history,
        ledger=ledger,
        outbox=outbox,
        dispatcher=dispatcher,
        registry=registry,
        engine=EscalationEngine(registry, rules, history, ledger, dispatcher, outbox, active),
    )
