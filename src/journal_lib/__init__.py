"""
journal_lib - Trading journal analytics, import and billing back-end.

Business logic lives in sub-packages:

    # Core infrastructure
    from src.journal_lib.core.models import init_db, get_connection
    from src.journal_lib.core.cache import get_analytics_cache
    from src.journal_lib.core.logging_config import setup_logging, get_logger

    # Trade analytics
    from src.journal_lib.analytics.service import AnalyticsService
    from src.journal_lib.analytics.dashboard import calculate_dashboard_data
    from src.journal_lib.analytics.date_range import parse_date_range

    # CSV import pipeline
    from src.journal_lib.imports.staging import OrderStagingService
    from src.journal_lib.imports.approval import FormatApprovalService
    from src.journal_lib.imports.trade_builder import build_trades_for_user

    # Accounts & billing
    from src.journal_lib.accounts.deletion import AccountDeletionService
    from src.journal_lib.billing.webhooks import WebhookService

The HTTP API is the data-service:

    from src.journal_lib.services.data.main import app

Install in editable mode for development:

    pip install -e ".[test]"
"""
