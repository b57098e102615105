"""
Utilidades para generar y validar la clave de acceso SRI.

La clave de acceso es un número de 49 dígitos:
- 1-8:   fecha de emisión (ddmmaaaa)
- 9-10:  código de documento (01 factura, 04 nota de crédito)
- 11-23: RUC del emisor
- 24:    ambiente (1 pruebas, 2 producción)
- 25-27: establecimiento
- 28-30: punto de emisión
- 31-39: secuencial
- 40-47: código numérico aleatorio
- 48:    tipo de emisión (1 normal)
- 49:    dígito verificador módulo 11
"""
from __future__ import annotations

import random
from datetime import date
from typing import Dict, Optional, Union

CLAVE_LEN = 49
PESOS = (2, 3, 4, 5, 6, 7)

# (nombre, inicio, fin) sobre la clave completa
CAMPOS = (
    ("fecha", 0, 8),
    ("cod_doc", 8, 10),
    ("ruc", 10, 23),
    ("ambiente", 23, 24),
    ("estab", 24, 27),
    ("pto_emi", 27, 30),
    ("secuencial", 30, 39),
    ("codigo_numerico", 39, 47),
    ("tipo_emision", 47, 48),
    ("dv", 48, 49),
)


def calc_dv_mod11(base: str) -> int:
    """
    Calcula el dígito verificador con módulo 11, pesos 2..7 cíclicos
    desde el dígito de la derecha.

    Args:
        base: String numérico SIN el DV (48 dígitos para la clave)

    Returns:
        DV calculado (0-9)
    """
    s = (base or "").strip()
    if not s.isdigit():
        raise ValueError(f"base debe ser numérica, recibido: {base!r}")

    total = 0
    for i, ch in enumerate(reversed(s)):
        total += int(ch) * PESOS[i % len(PESOS)]

    dv = 11 - (total % 11)
    if dv == 11:
        return 0
    if dv == 10:
        return 1
    return dv


def is_clave_valida(clave: str) -> bool:
    """Valida longitud, que sea numérica y el DV final."""
    s = (clave or "").strip()
    if not s.isdigit() or len(s) != CLAVE_LEN:
        return False
    return int(s[-1]) == calc_dv_mod11(s[:-1])


def _campo(valor: str, nombre: str, ancho: int) -> str:
    s = (valor or "").strip()
    if not s.isdigit() or len(s) != ancho:
        raise ValueError(f"{nombre} debe tener {ancho} dígitos, recibido: {valor!r}")
    return s


def _fecha_ddmmaaaa(fecha_emision: Union[date, str]) -> str:
    if isinstance(fecha_emision, date):
        return fecha_emision.strftime("%d%m%Y")
    return _campo((fecha_emision or "").replace("/", ""), "fecha_emision", 8)


def generar_clave_acceso(
    fecha_emision: Union[date, str],
    cod_doc: str,
    ruc: str,
    ambiente: str,
    establecimiento: str,
    punto_emision: str,
    secuencial: str,
    tipo_emision: str = "1",
    codigo_numerico: Optional[int] = None,
) -> str:
    """
    Genera la clave de acceso de 49 dígitos.

    Args:
        fecha_emision: date o texto dd/mm/aaaa
        cod_doc: "01" factura, "04" nota de crédito
        ruc: RUC del emisor (13 dígitos)
        ambiente: "1" pruebas, "2" producción
        establecimiento: 3 dígitos
        punto_emision: 3 dígitos
        secuencial: 9 dígitos (con ceros a la izquierda)
        tipo_emision: "1" normal
        codigo_numerico: código de 8 dígitos; si es None se sortea

    Returns:
        Clave de acceso con DV

    Raises:
        ValueError: si algún campo no tiene el ancho esperado
    """
    if codigo_numerico is None:
        codigo_numerico = random.randint(10000000, 99999999)
    if not 0 <= codigo_numerico <= 99999999:
        raise ValueError(f"codigo_numerico fuera de rango: {codigo_numerico}")

    base = "".join(
        [
            _fecha_ddmmaaaa(fecha_emision),
            _campo(cod_doc, "cod_doc", 2),
            _campo(ruc, "ruc", 13),
            _campo(ambiente, "ambiente", 1),
            _campo(establecimiento, "establecimiento", 3),
            _campo(punto_emision, "punto_emision", 3),
            _campo(secuencial, "secuencial", 9),
            f"{codigo_numerico:08d}",
            _campo(tipo_emision, "tipo_emision", 1),
        ]
    )
    return base + str(calc_dv_mod11(base))


def descomponer_clave(clave: str) -> Dict[str, str]:
    """
    Separa una clave de acceso en sus campos.

    Raises:
        ValueError: si la clave no tiene 49 dígitos
    """
    s = (clave or "").strip()
    if not s.isdigit() or len(s) != CLAVE_LEN:
        raise ValueError(f"Clave de acceso inválida (se esperan {CLAVE_LEN} dígitos): {clave!r}")
    return {nombre: s[inicio:fin] for nombre, inicio, fin in CAMPOS}
