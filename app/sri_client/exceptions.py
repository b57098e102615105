"""
Excepciones personalizadas para el cliente SRI
"""
from typing import Optional


class SriException(Exception):
    """Excepción base para errores SRI"""
    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class SriTransportError(SriException):
    """Error de red o timeout contra el SRI o el servidor de suscripciones"""
    pass


class SriRejectionError(SriException):
    """El SRI examinó y rechazó el comprobante"""
    pass


class SriSignatureError(SriException):
    """Error en la firma digital (certificado, password, proceso firmador)"""
    pass


class SriEntitlementError(SriException):
    """Suscripción o licencia no válida para emitir"""
    pass


class SriConfigError(SriException):
    """Configuración tributaria incompleta o inválida"""
    def __init__(self, faltantes: list):
        self.faltantes = list(faltantes)
        message = "Configuración incompleta: " + "; ".join(self.faltantes)
        super().__init__(message, "CONFIG")


class SriValidationError(SriException):
    """Error de validación de datos de entrada"""
    pass


class SriStateError(SriException):
    """Transición inválida en la máquina de estados de emisión"""
    pass


class SriResponseError(SriException):
    """Respuesta inesperada de un servidor"""
    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None):
        self.http_status = http_status
        super().__init__(message, code)
