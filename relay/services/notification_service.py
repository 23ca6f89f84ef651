import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import Notification, Operator
from relay.services.alert_service import alert_critical
from relay.services.fanout_service import Fanout

logger = get_logger("notification_service")


class OperatorNotifier:
    """Tell admins about account-critical provider errors: stored notification, socket event, ops alert."""

    def __init__(self, fanout: Fanout):
        self.fanout = fanout

    def _recipients(self, db: Session) -> list[Operator]:
        return (
            db.query(Operator)
            .filter(Operator.is_admin.is_(True), Operator.notify_errors.is_(True))
            .all()
        )

    async def notify_critical(
        self,
        db: Session,
        error: dict[str, Any],
        context: Optional[dict[str, Any]] = None,
    ) -> int:
        context = context or {}
        title = f"Critical WhatsApp error: {error.get('code')}"
        payload = {
            "type": "critical_error",
            "error": error,
            "context": context,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        operators = self._recipients(db)
        for operator in operators:
            db.add(
                Notification(
                    id=uuid.uuid4(),
                    operator_id=operator.id,
                    type="error",
                    title=title,
                    message=error.get("message") or title,
                    data=payload,
                    priority="high",
                )
            )
        db.commit()

        for operator in operators:
            await self.fanout.notify_critical(operator.id, payload)

        logger.error("Critical provider error", extra={"context": {"error": error, **context}})
        await asyncio.to_thread(alert_critical, title, {"message": error.get("message"), **context})
        return len(operators)
