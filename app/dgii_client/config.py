"""
Configuración para el gateway DGII e-CF
"""
import logging
import os
import secrets
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CERTIFICATE_PATH = str(Path("certificates") / "certificado.p12")


def configure_logging(level: Optional[str] = None) -> None:
    """Configura el logging raíz (nivel desde LOG_LEVEL)."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


class DgiiConfig:
    """Configuración del cliente DGII por ambiente"""

    ENV_TEST = "test"
    ENV_CERT = "cert"
    ENV_PROD = "prod"

    ENVIRONMENTS = (ENV_TEST, ENV_CERT, ENV_PROD)

    # Segmento de ruta de cada ambiente en los servicios DGII
    ENV_PATHS = {
        "test": "testecf",
        "cert": "certecf",
        "prod": "ecf",
    }

    ECF_HOST = os.getenv("DGII_ECF_HOST", "https://ecf.dgii.gov.do")
    FC_HOST = os.getenv("DGII_FC_HOST", "https://fc.dgii.gov.do")

    # Servicios REST del Emisor/Receptor electrónico
    SERVICES = {
        "semilla": "/autenticacion/api/autenticacion/semilla",
        "validar_semilla": "/autenticacion/api/autenticacion/validarsemilla",
        "recepcion": "/recepcion/api/facturaselectronicas",
        "recepcion_fc": "/recepcionfc/api/recepcion/ecf",
        "aprobacion_comercial": "/aprobacioncomercial/api/aprobacioncomercial",
        "anulacion": "/anulacionrangos/api/operaciones/anularrango",
        "consulta_resultado": "/consultaresultado/api/consultas/estado",
        "consulta_trackids": "/consultatrackids/api/trackids/consulta",
        "consulta_estado": "/consultaestado/api/consultas/estado",
        "consulta_directorio": "/consultadirectorio/api/consultas/obtenerdirectorioporrnc",
    }

    # Servicios que viven en el host de facturas de consumo
    FC_SERVICES = ("recepcion_fc",)

    def __init__(self, env: Optional[str] = None):
        """
        Inicializa la configuración DGII

        Args:
            env: Ambiente ('test', 'cert' o 'prod'). Si None, usa DGII_ENVIRONMENT
        """
        env = (env or os.getenv("DGII_ENVIRONMENT", self.ENV_TEST)).strip().lower()
        if env not in self.ENVIRONMENTS:
            raise ValueError(f"Ambiente inválido: {env}. Debe ser 'test', 'cert' o 'prod'")
        self.env = env

        # Certificado por defecto (P12) y variante Base64 para despliegues cloud
        self.certificate_path = os.getenv("CERTIFICATE_PATH", DEFAULT_CERTIFICATE_PATH)
        self.certificate_password = os.getenv("CERTIFICATE_PASSWORD", "")
        self.certificate_base64 = os.getenv("CERTIFICATE_BASE64", "")

        self.api_key = os.getenv("API_KEY", "development_api_key")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        # Emisor-Receptor
        self.rnc_receptor = os.getenv("RNC_RECEPTOR", "")
        self.webhook_url = os.getenv("ODOO_WEBHOOK_URL", "")
        self.webhook_api_key = os.getenv("ODOO_WEBHOOK_API_KEY", "")

        # Timeouts
        self.request_timeout = int(os.getenv("DGII_REQUEST_TIMEOUT", "30"))

        # Reintentos solo para consultas (GET); los envíos no se reintentan
        self.max_retries = int(os.getenv("DGII_MAX_RETRIES", "2"))
        self.backoff_base = float(os.getenv("DGII_BACKOFF_BASE", "0.6"))
        self.backoff_max = float(os.getenv("DGII_BACKOFF_MAX", "8.0"))

        # Monto límite para facturas de consumo resumidas (RFCE)
        self.summary_threshold = Decimal(os.getenv("DGII_SUMMARY_THRESHOLD", "250000.00"))

        # Autenticación de pares (semilla / token)
        self.token_secret = os.getenv("DGII_TOKEN_SECRET") or secrets.token_urlsafe(32)
        self.token_ttl_seconds = int(os.getenv("DGII_TOKEN_TTL_SECONDS", "3600"))
        self.seed_ttl_seconds = int(os.getenv("DGII_SEED_TTL_SECONDS", "300"))
        self.require_peer_token = os.getenv("DGII_REQUIRE_PEER_TOKEN", "false").strip().lower() in ("1", "true", "yes")

    @property
    def certificates_dir(self) -> Path:
        """Directorio donde viven los P12 por RNC (<rnc>.p12)"""
        return Path(self.certificate_path).expanduser().parent

    def env_path(self, env: Optional[str] = None) -> str:
        env = normalize_environment(env, default=self.env)
        return self.ENV_PATHS[env]

    def get_service_url(self, service_key: str, env: Optional[str] = None) -> str:
        """
        Obtiene la URL de un servicio DGII según el ambiente

        Args:
            service_key: Clave del servicio ('recepcion', 'consulta_estado', ...)
            env: Ambiente (por defecto el de la configuración)

        Returns:
            URL completa del servicio
        """
        if service_key not in self.SERVICES:
            raise ValueError(f"Servicio DGII inválido: {service_key}. Válidos: {sorted(self.SERVICES)}")
        host = self.FC_HOST if service_key in self.FC_SERVICES else self.ECF_HOST
        return f"{host}/{self.env_path(env)}{self.SERVICES[service_key]}"

    def service_urls(self, env: Optional[str] = None) -> Dict[str, str]:
        return {key: self.get_service_url(key, env) for key in self.SERVICES}


def normalize_environment(env: Optional[str], default: str = DgiiConfig.ENV_TEST) -> str:
    """Normaliza el ambiente ('test' | 'cert' | 'prod')."""
    env_norm = (env or default or "").strip().lower()
    if env_norm not in DgiiConfig.ENVIRONMENTS:
        raise ValueError(f"Ambiente inválido: {env!r}. Usar 'test', 'cert' o 'prod'")
    return env_norm


def get_dgii_config(env: Optional[str] = None) -> DgiiConfig:
    """
    Obtiene la configuración DGII desde variables de entorno

    Args:
        env: Ambiente ('test', 'cert' o 'prod'). Si None, usa DGII_ENVIRONMENT

    Returns:
        Configuración DGII
    """
    return DgiiConfig(env)
