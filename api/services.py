"""
Service initialization and dependency injection for the lead routing API.

Creates and manages the stores, scheduler, pipeline and intake service
used by the routes. Without a database the API runs on in-memory stores.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import get_settings, Settings
from lead_routing.channels import ChannelProvider, MetaCloudWhatsApp
from lead_routing.dispatch import NotificationDispatcher
from lead_routing.intake import LeadIntakeService
from lead_routing.pipeline import PipelineStateMachine
from lead_routing.round_robin import RoundRobinScheduler
from lead_routing.sales_client import HttpSalesClient
from lead_routing.scoring_model import ScoringConfig, ScoringEngine
from lead_routing import memory_stores

logger = logging.getLogger(__name__)


class Services:
    """Container for all application services."""

    def __init__(self):
        self.settings: Optional[Settings] = None
        self.backend: str = "uninitialized"
        self.leads = None
        self.customers = None
        self.negotiations = None
        self.qualifications = None
        self.roster = None
        self.conversations = None
        self.notifications = None
        self.directory = None
        self.vehicle_alerts = None
        self.follow_ups = None
        self.events = None
        self.recovery_rules_repo = None
        self.channel: Optional[ChannelProvider] = None
        self.sales = None
        self.scoring: Optional[ScoringEngine] = None
        self.scheduler: Optional[RoundRobinScheduler] = None
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.intake: Optional[LeadIntakeService] = None
        self.pipeline: Optional[PipelineStateMachine] = None
        self._initialized = False

    def initialize(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """Initialize all services."""
        if self._initialized:
            return

        self.settings = get_settings()
        if session_factory is not None:
            self._init_database_stores(session_factory)
        else:
            self._init_memory_stores()
        self._init_collaborators()
        self._init_core()
        self._initialized = True
        logger.info(f"Services initialized ({self.backend} stores)")

    def _init_memory_stores(self):
        self.leads = memory_stores.InMemoryLeadStore()
        self.customers = memory_stores.InMemoryCustomerStore()
        self.negotiations = memory_stores.InMemoryNegotiationStore()
        self.qualifications = memory_stores.InMemoryQualificationStore()
        self.roster = memory_stores.InMemoryAgentRoster()
        self.conversations = memory_stores.InMemoryConversationSource()
        self.notifications = memory_stores.InMemoryNotificationStore()
        self.directory = memory_stores.InMemoryAgentDirectory()
        self.vehicle_alerts = memory_stores.InMemoryVehicleAlertSink()
        self.follow_ups = memory_stores.InMemoryFollowUpSink()
        self.events = memory_stores.InMemoryLeadEventLog()
        self.backend = "memory"
        logger.warning("DATABASE_URL not set, using in-memory stores")

    def _init_database_stores(self, session_factory: async_sessionmaker[AsyncSession]):
        from database import repositories as repos

        self.leads = repos.LeadRepository(session_factory)
        self.customers = repos.CustomerRepository(session_factory)
        self.negotiations = repos.NegotiationRepository(session_factory)
        self.qualifications = repos.QualificationRepository(session_factory)
        self.roster = repos.AgentSlotRepository(session_factory)
        self.conversations = repos.ConversationRepository(session_factory)
        self.notifications = repos.NotificationRepository(session_factory)
        self.directory = repos.UserRepository(session_factory)
        self.vehicle_alerts = repos.VehicleAlertRepository(session_factory)
        self.follow_ups = repos.FollowUpRepository(session_factory)
        self.events = repos.LeadEventRepository(session_factory)
        self.recovery_rules_repo = repos.LossRecoveryRuleRepository(session_factory)
        self.backend = "database"

    def _init_collaborators(self):
        """External channels: WhatsApp for agents, the sales back office."""
        s = self.settings

        if s.whatsapp_configured:
            self.channel = MetaCloudWhatsApp(
                api_token=s.whatsapp_api_token,
                phone_number_id=s.whatsapp_phone_number_id,
                timeout=s.dispatch_timeout_seconds,
            )
            logger.info("WhatsApp channel ready for agent notifications")
        else:
            logger.warning("WhatsApp not configured, agent notifications are in-app only")

        if s.sales_service_url:
            self.sales = HttpSalesClient(
                base_url=s.sales_service_url,
                api_key=s.sales_service_api_key,
                timeout=s.collaborator_timeout_seconds,
            )
        else:
            logger.warning("SALES_SERVICE_URL not set, negotiations cannot be closed as won")

    def _init_core(self):
        s = self.settings

        self.scoring = ScoringEngine(ScoringConfig.from_settings(s))
        self.scheduler = RoundRobinScheduler(
            self.roster,
            max_attempts=s.round_robin_max_attempts,
            auto_reset=s.round_robin_auto_reset,
            business_timezone=s.business_timezone,
            timeout=s.collaborator_timeout_seconds,
        )
        self.dispatcher = NotificationDispatcher(
            self.notifications,
            directory=self.directory,
            channel=self.channel,
            timeout=s.dispatch_timeout_seconds,
        )
        self.intake = LeadIntakeService(
            self.leads,
            customers=self.customers,
            events=self.events,
            timeout=s.collaborator_timeout_seconds,
        )
        self.pipeline = PipelineStateMachine(
            negotiations=self.negotiations,
            leads=self.leads,
            qualifications=self.qualifications,
            conversations=self.conversations,
            scheduler=self.scheduler,
            scoring=self.scoring,
            dispatcher=self.dispatcher,
            sales=self.sales,
            commissions=self.sales,
            vehicle_alerts=self.vehicle_alerts,
            follow_ups=self.follow_ups,
            events=self.events,
            max_retries=s.transition_max_retries,
            timeout=s.collaborator_timeout_seconds,
            dispatch_timeout=s.dispatch_timeout_seconds,
        )

    async def load_recovery_rules(self):
        """Pull the active loss recovery rules into the pipeline."""
        if self.recovery_rules_repo is None or self.pipeline is None:
            return
        rules = await self.recovery_rules_repo.list_active()
        self.pipeline.recovery_rules = rules
        logger.info(f"Loaded {len(rules)} loss recovery rule(s)")

    async def shutdown(self):
        if self.pipeline is not None:
            await self.pipeline.drain()

    @property
    def is_ready(self) -> bool:
        return self._initialized and self.pipeline is not None

    def health(self) -> dict:
        """Return health status of all services."""
        return {
            "initialized": self._initialized,
            "backend": self.backend,
            "pipeline": self.pipeline is not None,
            "scheduler": self.scheduler is not None,
            "whatsapp": self.channel is not None,
            "sales_service": self.sales is not None,
        }


# Singleton
_services = Services()


def get_services() -> Services:
    """Get the global services instance."""
    return _services


def initialize_services(session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
    """Initialize all services (called at startup)."""
    _services.initialize(session_factory)


def reset_services() -> Services:
    """Drop the current container; the next startup builds a fresh one."""
    global _services
    _services = Services()
    return _services
