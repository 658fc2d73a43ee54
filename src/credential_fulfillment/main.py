"""
Composition root for the credential fulfillment engine.

Builds settings, the key provider, the database engine and the service
facade. A missing or short encryption key stops startup immediately.
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from credential_fulfillment.core.validator import CredentialBatchParser
from credential_fulfillment.database.connection import create_db_engine, create_session_factory
from credential_fulfillment.database.immutability import register_immutability_listeners
from credential_fulfillment.security.encryption import CredentialEncryptor, KeyProvider
from credential_fulfillment.services.credential_service import CredentialFulfillmentService
from credential_fulfillment.services.notifications import NotificationDispatcher
from credential_fulfillment.utils.config import CredentialEngineSettings, get_config
from credential_fulfillment.utils.exceptions import ConfigurationError
from credential_fulfillment.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class Application:
    """Wired-up engine components."""
    
    settings: CredentialEngineSettings
    engine: Engine
    session_factory: sessionmaker
    encryptor: CredentialEncryptor
    service: CredentialFulfillmentService


def load_environment(env_file: Optional[Path] = None) -> None:
    """Load a .env file into the process environment if one exists."""
    env_file = env_file or Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file, encoding="utf-8")
        logger.info(f"Loaded environment from {env_file}")
    else:
        logger.debug("No .env file found, using system environment variables")


def create_application(settings: Optional[CredentialEngineSettings] = None,
                       notifier: Optional[NotificationDispatcher] = None) -> Application:
    """
    Build the engine.
    
    Args:
        settings: Explicit settings; loaded from the environment when None
        notifier: Notification dispatcher; logs events when None
        
    Raises:
        ConfigurationError: Invalid settings or unusable encryption key
    """
    if settings is None:
        load_environment()
        settings = get_config()
    
    key_provider = KeyProvider.from_settings(settings)
    encryptor = CredentialEncryptor(key_provider)
    
    engine = create_db_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    session_factory = create_session_factory(engine)
    register_immutability_listeners()
    
    parser = CredentialBatchParser(
        pin_required_providers=settings.pin_required_provider_set,
        max_rows=settings.max_upload_rows,
    )
    service = CredentialFulfillmentService(
        session_factory,
        encryptor,
        parser,
        notifier=notifier,
        deadlock_retries=settings.deadlock_retries,
    )
    
    logger.info("Credential fulfillment engine initialized")
    return Application(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        encryptor=encryptor,
        service=service,
    )


def bootstrap() -> Application:
    """Create the application or exit with a non-zero status on bad configuration."""
    try:
        return create_application()
    except ConfigurationError as e:
        logger.error(f"Configuration validation failed: {e}")
        logger.error("Please check your .env file or environment configuration")
        sys.exit(1)
