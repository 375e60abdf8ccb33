"""Dependency Injection Container for the Feishu channel.

Builds one FeishuClient, enricher and gateway per enabled account and a
single shared instance of each channel service. Components are created on
first access and cached.
"""

import asyncio
import logging

from feishu_channel.application.services.channels import (
    AckTracker,
    AgentRouter,
    BotInfoSync,
    BotRegistry,
    CardActionHandler,
    DedupFilter,
    ForwardCoordinator,
    InboundPipeline,
    MentionResolver,
    MessageActionService,
)
from feishu_channel.configuration.config import FeishuAccountConfig, Settings, get_settings
from feishu_channel.domain.ports.services.agent_dispatch_port import AgentDispatchPort
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.client import FeishuClient
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.gateway import (
    FeishuGateway,
)
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.message_parser import (
    MessageEnricher,
)
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.transcription import (
    AudioTranscriber,
)
from feishu_channel.infrastructure.agent.http_dispatcher import HttpAgentDispatcher

logger = logging.getLogger(__name__)


class DIContainer:
    """Wires the channel services from Settings."""

    def __init__(
        self,
        settings: Settings | None = None,
        dispatcher: AgentDispatchPort | None = None,
        clients: dict[str, FeishuClient] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._accounts: dict[str, FeishuAccountConfig] = {
            account.account_id: account for account in self._settings.resolve_accounts()
        }
        self._dispatcher = dispatcher
        self._clients: dict[str, FeishuClient] = dict(clients or {})
        self._enrichers: dict[str, MessageEnricher] = {}
        self._gateways: dict[str, FeishuGateway] = {}
        self._transcriber: AudioTranscriber | None = None
        self._registry: BotRegistry | None = None
        self._dedup: DedupFilter | None = None
        self._resolver: MentionResolver | None = None
        self._router: AgentRouter | None = None
        self._ack: AckTracker | None = None
        self._coordinator: ForwardCoordinator | None = None
        self._pipeline: InboundPipeline | None = None
        self._card_handler: CardActionHandler | None = None
        self._actions: MessageActionService | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    def accounts(self) -> list[FeishuAccountConfig]:
        return list(self._accounts.values())

    def account(self, account_id: str) -> FeishuAccountConfig | None:
        return self._accounts.get(account_id)

    def has_account(self, account_id: str) -> bool:
        return account_id in self._accounts

    # ------------------------------------------------------------------
    # Per-account adapters
    # ------------------------------------------------------------------

    def client(self, account_id: str) -> FeishuClient | None:
        """Get the FeishuClient of an account, or None if it is not configured."""
        if account_id in self._clients:
            return self._clients[account_id]
        account = self._accounts.get(account_id)
        if account is None or not account.configured:
            return None
        client = FeishuClient(account, probe_timeout_seconds=self._settings.probe_timeout_seconds)
        self._clients[account_id] = client
        return client

    def transcriber(self) -> AudioTranscriber:
        if self._transcriber is None:
            self._transcriber = AudioTranscriber(
                command=self._settings.transcribe_command,
                timeout_seconds=self._settings.transcribe_timeout_seconds,
            )
        return self._transcriber

    def enricher(self, account_id: str) -> MessageEnricher | None:
        if account_id in self._enrichers:
            return self._enrichers[account_id]
        client = self.client(account_id)
        if client is None:
            return None
        enricher = MessageEnricher(
            source=client,
            transcriber=self.transcriber(),
            workspace=self._accounts[account_id].workspace,
        )
        self._enrichers[account_id] = enricher
        return enricher

    def gateway(self, account_id: str) -> FeishuGateway | None:
        if account_id in self._gateways:
            return self._gateways[account_id]
        account = self._accounts.get(account_id)
        if account is None:
            return None
        gateway = FeishuGateway(account, self.inbound_pipeline(), self.card_action_handler())
        self._gateways[account_id] = gateway
        return gateway

    # ------------------------------------------------------------------
    # Shared services
    # ------------------------------------------------------------------

    def agent_dispatcher(self) -> AgentDispatchPort:
        if self._dispatcher is None:
            self._dispatcher = HttpAgentDispatcher(
                url=self._settings.agent_dispatch_url,
                timeout_seconds=self._settings.agent_dispatch_timeout_seconds,
                api_key=self._settings.agent_api_key,
            )
        return self._dispatcher

    def bot_registry(self) -> BotRegistry:
        if self._registry is None:
            self._registry = BotRegistry()
        return self._registry

    def dedup_filter(self) -> DedupFilter:
        if self._dedup is None:
            self._dedup = DedupFilter(
                ttl_ms=self._settings.dedup_ttl_seconds * 1000,
                expire_ms=self._settings.dedup_expire_minutes * 60 * 1000,
                cleanup_threshold=self._settings.dedup_cleanup_threshold,
            )
        return self._dedup

    def mention_resolver(self) -> MentionResolver:
        if self._resolver is None:
            self._resolver = MentionResolver(self.bot_registry())
        return self._resolver

    def agent_router(self) -> AgentRouter:
        if self._router is None:
            self._router = AgentRouter(
                lambda account_id: (
                    self._accounts[account_id].agent_id if account_id in self._accounts else None
                )
            )
        return self._router

    def ack_tracker(self) -> AckTracker:
        if self._ack is None:
            self._ack = AckTracker(
                sender_for=self.client,
                emoji=self._settings.ack_emoji,
                timeout_seconds=self._settings.ack_timeout_seconds,
                enabled_for=lambda account_id: (
                    account_id in self._accounts and self._accounts[account_id].auto_acknowledge
                ),
            )
        return self._ack

    def forward_coordinator(self) -> ForwardCoordinator:
        if self._coordinator is None:
            self._coordinator = ForwardCoordinator(
                registry=self.bot_registry(),
                resolver=self.mention_resolver(),
                router=self.agent_router(),
                dispatcher=self.agent_dispatcher(),
                sender_for=self.client,
                max_depth=self._settings.forward_max_depth,
                workers=self._settings.forward_workers,
            )
        return self._coordinator

    def inbound_pipeline(self) -> InboundPipeline:
        if self._pipeline is None:
            self._pipeline = InboundPipeline(
                registry=self.bot_registry(),
                dedup=self.dedup_filter(),
                resolver=self.mention_resolver(),
                ack=self.ack_tracker(),
                coordinator=self.forward_coordinator(),
                router=self.agent_router(),
                dispatcher=self.agent_dispatcher(),
                sender_for=self.client,
                enricher_for=self.enricher,
                flush_delay_ms=self._settings.reply_flush_delay_ms,
                max_buffer_ms=self._settings.reply_max_buffer_ms,
            )
        return self._pipeline

    def card_action_handler(self) -> CardActionHandler:
        if self._card_handler is None:
            self._card_handler = CardActionHandler(self.inbound_pipeline(), self.has_account)
        return self._card_handler

    def message_action_service(self) -> MessageActionService:
        if self._actions is None:
            self._actions = MessageActionService(
                sender_for=self.client,
                text_chunk_limit=self._settings.text_chunk_limit,
            )
        return self._actions

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def sync_bots(self) -> int:
        """Register every account's bot identity. Returns the number registered."""
        sync = BotInfoSync(self.bot_registry())
        registered = 0
        for account in self.accounts():
            client = self.client(account.account_id)
            if client is None:
                logger.warning(f"[DIContainer] [{account.account_id}] Missing credentials, skipping")
                continue
            if await sync.sync(account, client) is not None:
                registered += 1
        logger.info(f"[DIContainer] Registered {registered}/{len(self._accounts)} bots")
        return registered

    async def start(self) -> None:
        await self.sync_bots()
        self.forward_coordinator().start()
        for account in self.accounts():
            gateway = self.gateway(account.account_id)
            if gateway is None:
                continue
            try:
                await gateway.start()
            except Exception as e:
                logger.error(
                    f"[DIContainer] [{account.account_id}] Gateway failed to start: {e}",
                    exc_info=True,
                )

    async def shutdown(self) -> None:
        """Stop intake, let running dispatches and forwards finish, then close clients."""
        for gateway in self._gateways.values():
            await gateway.stop()
        if self._pipeline is not None:
            await self._pipeline.drain()
        if self._card_handler is not None:
            await self._card_handler.drain()
        if self._coordinator is not None:
            await self._coordinator.stop(timeout=self._settings.shutdown_timeout_seconds)
        closers = [client.close() for client in self._clients.values()]
        if isinstance(self._dispatcher, HttpAgentDispatcher):
            closers.append(self._dispatcher.close())
        await asyncio.gather(*closers, return_exceptions=True)
