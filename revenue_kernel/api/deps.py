"""
Dependencies for authentication, database sessions and shared collaborators.
"""
import hmac
from typing import Generator, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from revenue_kernel import config
from revenue_kernel.database import SessionLocal
from revenue_kernel.jobs.tasks import TaskContext
from revenue_kernel.utils import get_logger
from revenue_kernel.utils.metrics import PipelineMetrics

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def _check_bearer(credentials: Optional[HTTPAuthorizationCredentials], expected: Optional[str], realm: str) -> None:
    if not expected:
        logger.error("Endpoint secret not configured", realm=realm)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{realm} secret not configured",
        )
    if credentials is None or not hmac.compare_digest(credentials.credentials, expected):
        logger.warning("Authentication failed", realm=realm)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_cron_secret(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> None:
    """Cron endpoints accept only ``Authorization: Bearer <CRON_SECRET>``."""
    _check_bearer(credentials, config.CRON_SETTINGS.get("secret"), "cron")  # type: ignore[arg-type]


def require_operator(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> None:
    """Operator endpoints accept ``Authorization: Bearer <OPERATOR_TOKEN>``.

    Tenant membership checks live in the outer product; this token only
    separates operators from the public.
    """
    _check_bearer(credentials, config.OPERATOR_TOKEN, "operator")


def get_task_context(request: Request) -> TaskContext:
    ctx = getattr(request.app.state, "task_context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Job runtime not initialized")
    return ctx


def get_metrics(ctx: TaskContext = Depends(get_task_context)) -> PipelineMetrics:
    return ctx.metrics
