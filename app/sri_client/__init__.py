"""
Módulo cliente para emisión de comprobantes electrónicos del SRI
Ecuador - Servicio de Rentas Internas
"""
from .config import Ambiente, PerfilTributario, get_soap_service_url
from .clave_acceso import generar_clave_acceso, calc_dv_mod11, is_clave_valida, descomponer_clave
from .models import (
    TipoDocumento,
    EstadoSri,
    DocumentoFiscal,
    ResultadoSri,
    ResultadoEmision,
    EstadoSuscripcion,
)
from .xml_generator import generar_xml, calcular_totales, normalizar_texto
from .xml_signer import SigningPort, NodeXadesSigner, FirmaFija, inspeccionar_p12, cargar_certificado
from .soap_client import SoapClient
from .suscripcion import EntitlementCache, ServidorSuscripcion, ServidorLicencias, evaluar_plan
from .store import SriStore
from .exceptions import (
    SriException,
    SriTransportError,
    SriRejectionError,
    SriSignatureError,
    SriEntitlementError,
    SriConfigError,
    SriValidationError,
    SriStateError,
    SriResponseError,
)

__all__ = [
    'Ambiente',
    'PerfilTributario',
    'get_soap_service_url',
    'generar_clave_acceso',
    'calc_dv_mod11',
    'is_clave_valida',
    'descomponer_clave',
    'TipoDocumento',
    'EstadoSri',
    'DocumentoFiscal',
    'ResultadoSri',
    'ResultadoEmision',
    'EstadoSuscripcion',
    'generar_xml',
    'calcular_totales',
    'normalizar_texto',
    'SigningPort',
    'NodeXadesSigner',
    'FirmaFija',
    'inspeccionar_p12',
    'cargar_certificado',
    'SoapClient',
    'EntitlementCache',
    'ServidorSuscripcion',
    'ServidorLicencias',
    'evaluar_plan',
    'SriStore',
    'SriException',
    'SriTransportError',
    'SriRejectionError',
    'SriSignatureError',
    'SriEntitlementError',
    'SriConfigError',
    'SriValidationError',
    'SriStateError',
    'SriResponseError',
]
