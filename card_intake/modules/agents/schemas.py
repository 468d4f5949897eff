from __future__ import annotations

from enum import Enum


class Center(str, Enum):
    tama = "طما"
    tahta = "طهطا"
    juhayna = "جهينة"


class AgentStatus(str, Enum):
    active = "active"
    inactive = "inactive"
