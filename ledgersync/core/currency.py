from __future__ import annotations

import logging
from typing import Any, Optional


log = logging.getLogger(__name__)

DEFAULT_CURRENCY = "EUR"

# Active ISO 4217 currency codes (fund and precious-metal codes excluded).
SUPPORTED_CURRENCIES = frozenset(
    """
    AED AFN ALL AMD ANG AOA ARS AUD AWG AZN BAM BBD BDT BGN BHD BIF BMD BND BOB BRL BSD BTN BWP BYN
    BZD CAD CDF CHF CLP CNY COP CRC CUP CVE CZK DJF DKK DOP DZD EGP ERN ETB EUR FJD FKP GBP GEL GHS
    GIP GMD GNF GTQ GYD HKD HNL HTG HUF IDR ILS INR IQD IRR ISK JMD JOD JPY KES KGS KHR KMF KPW KRW
    KWD KYD KZT LAK LBP LKR LRD LSL LYD MAD MDL MGA MKD MMK MNT MOP MRU MUR MVR MWK MXN MYR MZN NAD
    NGN NIO NOK NPR NZD OMR PAB PEN PGK PHP PKR PLN PYG QAR RON RSD RUB RWF SAR SBD SCR SDG SEK SGD
    SHP SLE SOS SRD SSP STN SVC SYP SZL THB TJS TMT TND TOP TRY TTD TWD TZS UAH UGX USD UYU UZS VES
    VND VUV WST XAF XCD XCG XOF XPF YER ZAR ZMW ZWG
    """.split()
)


def normalize_currency(raw: Any, *, context: str | None = None) -> Optional[str]:
    """
    Return the upper-cased ISO code, or None for blank/unknown input.

    Never raises: callers fall back through record -> account -> default.
    """
    if raw is None:
        return None
    s = str(raw).strip().strip('"').strip("'").strip().upper()
    if not s:
        return None
    if s in SUPPORTED_CURRENCIES:
        return s
    if context:
        log.warning("Invalid currency code %r (%s); falling back", raw, context)
    else:
        log.warning("Invalid currency code %r; falling back", raw)
    return None


def resolve_currency(*candidates: Any, default: str = DEFAULT_CURRENCY, context: str | None = None) -> str:
    for c in candidates:
        code = normalize_currency(c, context=context)
        if code:
            return code
    return default
