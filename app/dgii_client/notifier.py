"""
Notificación (webhook) de documentos recibidos

Se ejecuta en un hilo daemon: la respuesta al emisor nunca espera al
webhook, y un fallo del webhook solo se registra en el log. Cada entrega
abre su propia requests.Session (las sesiones no se comparten entre hilos).
"""
import logging
import threading
from typing import Any, Callable, Dict, Optional

import requests

from .config import DgiiConfig

logger = logging.getLogger(__name__)


class ReceptionNotifier:
    """Envía el resultado de una recepción a un webhook externo (p. ej. Odoo)"""

    def __init__(
        self,
        url: Optional[str],
        api_key: Optional[str] = None,
        timeout: int = 10,
        session_factory: Optional[Callable[[], requests.Session]] = None,
    ):
        self.url = url or ""
        self.api_key = api_key or ""
        self.timeout = timeout
        self.session_factory = session_factory or requests.Session

    @classmethod
    def from_config(cls, config: DgiiConfig) -> "ReceptionNotifier":
        return cls(config.webhook_url, config.webhook_api_key)

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def notify(self, payload: Dict[str, Any]) -> Optional[threading.Thread]:
        """
        Dispara la notificación en segundo plano

        Returns:
            El hilo lanzado (None si no hay webhook configurado)
        """
        if not self.enabled:
            logger.debug("Webhook de recepción no configurado; notificación omitida")
            return None
        thread = threading.Thread(
            target=self._deliver,
            args=(payload,),
            name="reception-notifier",
            daemon=True,
        )
        thread.start()
        return thread

    def _deliver(self, payload: Dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        session = self.session_factory()
        try:
            resp = session.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except Exception as e:
            # Best-effort: el acuse ya se entregó al emisor
            logger.error("Error notificando recepción a %s: %s", self.url, e)
            return
        finally:
            session.close()
        if resp.status_code >= 400:
            logger.warning("Webhook %s respondió HTTP %s: %s", self.url, resp.status_code, resp.text[:500])
        else:
            logger.info("Recepción notificada a %s (HTTP %s)", self.url, resp.status_code)
