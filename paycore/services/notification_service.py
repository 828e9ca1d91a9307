"""
PayCore - Notification Sink

Informational messages about payroll events. Delivery is an external
concern; this sink records them through logging and never affects the
outcome of the operation that emits them.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from paycore.config import settings

logger = logging.getLogger(__name__)


class NotificationService:
    """Emit payroll notifications."""
    
    def __init__(self, enabled: Optional[bool] = None):
        self.enabled = settings.notifications_enabled if enabled is None else enabled
    
    def notify(
        self,
        title: str,
        message: str,
        recipient_id: Optional[uuid.UUID] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record a notification; returns False when notifications are switched off."""
        if not self.enabled:
            return False
        
        logger.info(
            f"Notification [{title}] to {recipient_id or 'payroll-admins'}: {message}",
            extra={"notification_context": context or {}},
        )
        return True
