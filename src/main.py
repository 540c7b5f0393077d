"""Application entry point: wires repositories, collaborators and services."""

import logging
from dataclasses import dataclass
from typing import Any

from src.core.config import Settings, get_settings
from src.core.events import EventDispatcher
from src.core.locks import KeyedLockRegistry
from src.core.stripe import configure_stripe
from src.core.supabase import check_database_connection, get_supabase_client
from src.repositories.interfaces import CouponRepository, OrderRepository, PaymentRepository, RefundRepository
from src.repositories.memory import (
    InMemoryCouponRepository,
    InMemoryOrderRepository,
    InMemoryPaymentRepository,
    InMemoryRefundRepository,
)
from src.repositories.supabase import (
    SupabaseCouponRepository,
    SupabaseOrderRepository,
    SupabasePaymentRepository,
    SupabaseRefundRepository,
)
from src.services.audit_service import AuditLogService, InMemoryAuditLogService, SupabaseAuditLogService
from src.services.catalog_service import InMemoryProductCatalog, ProductCatalog
from src.services.checkout_service import CheckoutService
from src.services.coupon_service import CouponService
from src.services.inventory_service import InMemoryInventoryService, InventoryService
from src.services.notification_service import (
    EmailNotificationService,
    InMemoryNotificationService,
    NotificationService,
)
from src.services.order_service import OrderService
from src.services.payment_service import PaymentService
from src.services.stripe_gateway import StripeGatewayService

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


@dataclass
class Repositories:
    orders: OrderRepository
    payments: PaymentRepository
    refunds: RefundRepository
    coupons: CouponRepository


@dataclass
class Application:
    """Everything a transport layer needs to serve ordering, payment and coupon calls."""

    settings: Settings
    repositories: Repositories
    events: EventDispatcher
    locks: KeyedLockRegistry
    audit: AuditLogService
    notifications: NotificationService
    coupons: CouponService
    orders: OrderService
    payments: PaymentService
    checkout: CheckoutService
    gateway: StripeGatewayService | None = None

    async def health(self) -> dict[str, Any]:
        """Storage health for readiness checks."""
        if self.settings.storage_backend == "supabase":
            database = await check_database_connection(get_supabase_client())
        else:
            database = {"healthy": True}
        return {
            "status": "ok" if database["healthy"] else "degraded",
            "storage": self.settings.storage_backend,
            "database": database,
        }


def build_repositories(settings: Settings) -> Repositories:
    """Repositories for the configured storage backend."""
    if settings.storage_backend == "supabase":
        client = get_supabase_client()
        timeout = settings.repository_timeout_seconds
        return Repositories(
            orders=SupabaseOrderRepository(client, timeout),
            payments=SupabasePaymentRepository(client, timeout),
            refunds=SupabaseRefundRepository(client, timeout),
            coupons=SupabaseCouponRepository(client, timeout),
        )
    return Repositories(
        orders=InMemoryOrderRepository(),
        payments=InMemoryPaymentRepository(),
        refunds=InMemoryRefundRepository(),
        coupons=InMemoryCouponRepository(),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)


def create_app(
    settings: Settings | None = None,
    catalog: ProductCatalog | None = None,
    inventory: InventoryService | None = None,
) -> Application:
    """Create and wire the application.

    Args:
        settings: Defaults to ``get_settings()``.
        catalog: Product catalog collaborator; defaults to an empty in-memory catalog.
        inventory: Inventory collaborator; defaults to in-memory stock tracking.

    Returns:
        Application: Wired services.
    """
    settings = settings or get_settings()
    configure_logging(settings)
    logger.info("Starting %s in %s mode (%s storage)", settings.app_name, settings.app_env, settings.storage_backend)

    repositories = build_repositories(settings)
    locks = KeyedLockRegistry(settings.lock_timeout_seconds)
    events = EventDispatcher()

    if settings.storage_backend == "supabase":
        audit: AuditLogService = SupabaseAuditLogService(get_supabase_client(), settings.repository_timeout_seconds)
    else:
        audit = InMemoryAuditLogService()

    if settings.resend_api_key:
        notifications: NotificationService = EmailNotificationService(settings)
    else:
        logger.warning("Resend API key not configured. Order e-mails will not be sent.")
        notifications = InMemoryNotificationService()
    events.subscribe_all(notifications.notify)

    gateway = None
    if settings.stripe_secret_key:
        configure_stripe(settings)
        gateway = StripeGatewayService(settings)

    coupons = CouponService(repositories.coupons, locks, events)
    orders = OrderService(
        repositories.orders,
        locks,
        inventory or InMemoryInventoryService(),
        audit,
        events,
        settings,
    )
    payments = PaymentService(repositories.payments, repositories.refunds, locks, audit, events)
    checkout = CheckoutService(orders, payments, coupons, catalog or InMemoryProductCatalog(), gateway)

    return Application(
        settings=settings,
        repositories=repositories,
        events=events,
        locks=locks,
        audit=audit,
        notifications=notifications,
        coupons=coupons,
        orders=orders,
        payments=payments,
        checkout=checkout,
        gateway=gateway,
    )
