import enum


class WeightUnit(str, enum.Enum):
    KG = "kg"
    LB = "lb"


class WeightConverter:
    """Utility for converting between kg and lb."""

    KG_TO_LB = 2.20462
    LB_TO_KG = 0.453592

    @staticmethod
    def kg_to_lb(kg: float) -> float:
        return round(kg * WeightConverter.KG_TO_LB, 2)

    @staticmethod
    def lb_to_kg(lb: float) -> float:
        return round(lb * WeightConverter.LB_TO_KG, 2)

    @staticmethod
    def to_kg(weight: float, unit: WeightUnit | str) -> float:
        """Return ``weight`` expressed in kilograms without rounding."""
        unit = WeightUnit(unit)
        if unit is WeightUnit.LB:
            return weight * WeightConverter.LB_TO_KG
        return float(weight)
