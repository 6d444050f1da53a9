"""
Perk enumerations.
"""

import enum


class PerkType(str, enum.Enum):
    PHYSICAL = "physical"
    DIGITAL = "digital"
    EXPERIENCE = "experience"
