import asyncio
import logging
from typing import Dict, List, Optional

from pyfcm import FCMNotification

from dm_service.core.config import Settings


logger = logging.getLogger(__name__)


class NoopPush:

    enabled = False

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        return


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        for token in tokens:
            # pyfcm is synchronous
            await asyncio.to_thread(
                self._client.notify,
                fcm_token=token,
                notification_title=title,
                notification_body=body,
                data_payload=data or {},
            )


def build_push(settings: Settings):
    if not (settings.FCM_SERVICE_ACCOUNT_FILE and settings.FCM_PROJECT_ID):
        logger.info("FCM not configured, push delivery disabled")
        return NoopPush()
    return FcmPush(settings.FCM_SERVICE_ACCOUNT_FILE, settings.FCM_PROJECT_ID)
