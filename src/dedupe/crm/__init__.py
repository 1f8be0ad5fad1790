"""External CRM integration -- HTTP gateway and property mappings.

- CRMGateway: list/patch/delete/merge and property calls with bounded retry
- from_crm_object / to_crm_properties: conversion between CRM properties
  and local records or staged field values
"""

from src.dedupe.crm.field_mapping import (
    CRM_PROPERTY_MAP,
    FETCH_PROPERTIES,
    from_crm_object,
    to_crm_properties,
)
from src.dedupe.crm.gateway import CRMGateway, CRMPage, CRMProperty

__all__ = [
    "CRMGateway",
    "CRMPage",
    "CRMProperty",
    "CRM_PROPERTY_MAP",
    "FETCH_PROPERTIES",
    "from_crm_object",
    "to_crm_properties",
]
