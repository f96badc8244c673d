"""
Канонизация TON-адресов кошелька: raw (0:hex), EQ… и UQ… одного кошелька сводятся
к одной строке — friendly non-bounceable (UQ…). Так players.wallet_address уникален
по кошельку, а не по способу его записи.
Локальная реализация (CRC16-XMODEM + base64url), без внешних API.
"""
import base64
import binascii
import logging
import re
import struct
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Кэш: исходная запись → каноническая. Адрес неизменен, TTL не нужен.
_cache: Dict[str, str] = {}

_RAW_RE = re.compile(r"^-?\d+:[0-9a-fA-F]{64}$")
_FRIENDLY_RE = re.compile(r"^[A-Za-z0-9_\-+/]{48}$")

TAG_BOUNCEABLE = 0x11
TAG_NON_BOUNCEABLE = 0x51
TAG_TESTNET = 0x80


def _crc16_xmodem(data: bytes) -> int:
    """CRC16-XMODEM (poly=0x1021) — используется в TON friendly-адресах."""
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ 0x1021
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


def _encode_friendly(workchain: int, addr_bytes: bytes, bounceable: bool = False, testnet: bool = False) -> str:
    tag = TAG_BOUNCEABLE if bounceable else TAG_NON_BOUNCEABLE
    if testnet:
        tag |= TAG_TESTNET
    payload = bytes([tag]) + struct.pack("b", workchain) + addr_bytes
    full = payload + struct.pack(">H", _crc16_xmodem(payload))
    return base64.urlsafe_b64encode(full).decode("ascii").rstrip("=")


def parse_raw(address: str) -> Optional[Tuple[int, bytes]]:
    """raw `wc:hex64` → (workchain, 32 байта) или None."""
    if not _RAW_RE.match(address):
        return None
    wc_str, hex_part = address.split(":", 1)
    workchain = int(wc_str)
    if not -128 <= workchain <= 127:
        return None
    return workchain, bytes.fromhex(hex_part)


def parse_friendly(address: str) -> Optional[Tuple[int, bytes, bool]]:
    """friendly (48 символов base64/base64url) → (workchain, 32 байта, testnet) или None при битой CRC."""
    if not _FRIENDLY_RE.match(address):
        return None
    try:
        full = base64.urlsafe_b64decode(address.replace("+", "-").replace("/", "_"))
    except (binascii.Error, ValueError):
        return None
    if len(full) != 36:
        return None
    payload, crc = full[:34], full[34:]
    if struct.unpack(">H", crc)[0] != _crc16_xmodem(payload):
        return None
    tag = payload[0]
    if tag & ~TAG_TESTNET not in (TAG_BOUNCEABLE, TAG_NON_BOUNCEABLE):
        return None
    workchain = struct.unpack("b", payload[1:2])[0]
    return workchain, payload[2:], bool(tag & TAG_TESTNET)


def canonical_wallet(address: str) -> str:
    """
    Приводит адрес кошелька к канонической форме.
    TON raw и friendly → UQ… (non-bounceable, флаг testnet сохраняется).
    Нераспознанные строки возвращаются как есть, только без пробелов по краям.
    """
    if not address or not isinstance(address, str):
        return ""
    addr = address.strip()
    if not addr:
        return ""
    if addr in _cache:
        return _cache[addr]
    canonical = raw_to_friendly(addr)
    if canonical == addr:
        friendly = parse_friendly(addr)
        if friendly is not None:
            canonical = _encode_friendly(friendly[0], friendly[1], testnet=friendly[2])
    _cache[addr] = canonical
    return canonical


def raw_to_friendly(raw_address: str, bounceable: bool = False) -> str:
    """raw (0:hex) → friendly. При ошибке возвращает исходный адрес."""
    parsed = parse_raw((raw_address or "").strip())
    if parsed is None:
        return raw_address
    return _encode_friendly(parsed[0], parsed[1], bounceable=bounceable)
