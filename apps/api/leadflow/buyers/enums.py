from __future__ import annotations

from enum import StrEnum


class City(StrEnum):
    CHANDIGARH = "Chandigarh"
    MOHALI = "Mohali"
    ZIRAKPUR = "Zirakpur"
    PANCHKULA = "Panchkula"
    OTHER = "Other"


class PropertyType(StrEnum):
    APARTMENT = "Apartment"
    VILLA = "Villa"
    PLOT = "Plot"
    OFFICE = "Office"
    RETAIL = "Retail"


class Bhk(StrEnum):
    ONE = "1"
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    STUDIO = "Studio"


class Purpose(StrEnum):
    BUY = "Buy"
    RENT = "Rent"


class Timeline(StrEnum):
    ZERO_TO_THREE_MONTHS = "0-3m"
    THREE_TO_SIX_MONTHS = "3-6m"
    MORE_THAN_SIX_MONTHS = ">6m"
    EXPLORING = "Exploring"


class Source(StrEnum):
    WEBSITE = "Website"
    REFERRAL = "Referral"
    WALK_IN = "Walk-in"
    CALL = "Call"
    OTHER = "Other"


class BuyerStatus(StrEnum):
    NEW = "New"
    QUALIFIED = "Qualified"
    CONTACTED = "Contacted"
    VISITED = "Visited"
    NEGOTIATION = "Negotiation"
    CONVERTED = "Converted"
    DROPPED = "Dropped"


PROPERTY_TYPES_REQUIRING_BHK = (PropertyType.APARTMENT, PropertyType.VILLA)
