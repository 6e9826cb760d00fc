"""
Generador de URL de consulta (timbre / código QR) para e-CF

Dos esquemas:
- ConsultaTimbre (ecf.dgii.gov.do): RncEmisor, RncComprador, ENCF, FechaEmision,
  MontoTotal, FechaFirma, CodigoSeguridad
- ConsultaTimbreFC (fc.dgii.gov.do): RncEmisor, ENCF, MontoTotal, CodigoSeguridad.
  Solo para facturas de consumo (E32) por debajo del monto límite.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional, Tuple
from urllib.parse import quote

from .config import DgiiConfig, get_dgii_config, normalize_environment
from .exceptions import DgiiValidationError
from .models import CONSUMPTION_ECF_TYPE, ecf_type_from_encf, parse_amount
from .utils import format_amount, format_dgii_date, format_dgii_datetime

logger = logging.getLogger(__name__)


class QRGenerator:
    """Construye la URL de verificación que se imprime como QR"""

    def __init__(self, config: Optional[DgiiConfig] = None, summary_threshold: Optional[Decimal] = None):
        self.config = config or get_dgii_config()
        self.summary_threshold = (
            Decimal(summary_threshold) if summary_threshold is not None else self.config.summary_threshold
        )

    def is_short_form(self, encf: str, monto_total: Any) -> bool:
        """E32 por debajo del límite usa ConsultaTimbreFC"""
        if ecf_type_from_encf(encf) != CONSUMPTION_ECF_TYPE:
            return False
        return parse_amount(monto_total) < self.summary_threshold

    def build_reference(
        self,
        rnc_emisor: str,
        encf: str,
        monto_total: Any,
        security_code: str,
        rnc_comprador: Optional[str] = None,
        fecha_emision: Any = None,
        fecha_firma: Any = None,
        environment: Optional[str] = None,
    ) -> str:
        """
        Genera la URL de consulta del e-CF

        Args:
            rnc_emisor: RNC del emisor
            encf: Número de e-CF (E310000000001)
            monto_total: Monto total del documento
            security_code: Código de seguridad (6 caracteres del SignatureValue)
            rnc_comprador: RNC del comprador (solo esquema completo)
            fecha_emision: Fecha de emisión (solo esquema completo)
            fecha_firma: Fecha-hora de firma (solo esquema completo)
            environment: 'test' | 'cert' | 'prod'

        Returns:
            URL lista para codificar en el QR
        """
        if not rnc_emisor or not encf or not security_code:
            raise DgiiValidationError("RncEmisor, ENCF y CodigoSeguridad son requeridos para el QR")
        try:
            env_path = self.config.env_path(normalize_environment(environment, default=self.config.env))
        except ValueError as exc:
            raise DgiiValidationError(str(exc), field="environment") from exc
        monto = format_amount(parse_amount(monto_total))

        if self.is_short_form(encf, monto_total):
            base = f"{self.config.FC_HOST}/{env_path}/ConsultaTimbreFC"
            params: List[Tuple[str, str]] = [
                ("RncEmisor", rnc_emisor),
                ("ENCF", encf),
                ("MontoTotal", monto),
                ("CodigoSeguridad", security_code),
            ]
        else:
            base = f"{self.config.ECF_HOST}/{env_path}/ConsultaTimbre"
            params = [
                ("RncEmisor", rnc_emisor),
                ("RncComprador", rnc_comprador or ""),
                ("ENCF", encf),
                ("FechaEmision", format_dgii_date(fecha_emision or datetime.now())),
                ("MontoTotal", monto),
                ("FechaFirma", format_dgii_datetime(fecha_firma or datetime.now())),
                ("CodigoSeguridad", security_code),
            ]

        query = "&".join(f"{key}={quote(str(value), safe='')}" for key, value in params)
        url = f"{base}?{query}"
        logger.debug("URL QR generada para %s: %s", encf, url)
        return url
