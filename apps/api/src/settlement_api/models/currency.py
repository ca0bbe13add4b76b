from enum import Enum


class CurrencyEnum(str, Enum):
    EGP = "EGP"
    SAR = "SAR"
    AED = "AED"
    USD = "USD"
    EUR = "EUR"
