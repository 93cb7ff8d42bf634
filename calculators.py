import math
from datetime import timedelta

INCH_TO_M = 0.0254
LB_TO_KG = 0.45359237

ACTIVITY_FACTORS = {
    "sedentary": 1.2,
    "light": 1.375,
    "moderate": 1.55,
    "active": 1.725,
    "very": 1.9,
}

# Extra ml of water per day
WATER_ACTIVITY_ML = {"sedentary": 0, "light": 300, "moderate": 700, "active": 1200, "very": 1800}
WATER_CLIMATE_ML = {"temperate": 0, "warm": 400, "hot": 900}
WATER_MIN_ML = 1500
WATER_MAX_ML = 6000

GOAL_ADJUSTMENT = {"cut": -0.15, "maintain": 0.0, "bulk": 0.15}

HR_ZONES = [
    ("Zone 1 (50–60%)", 0.5, 0.6),
    ("Zone 2 (60–70%)", 0.6, 0.7),
    ("Zone 3 (70–80%)", 0.7, 0.8),
    ("Zone 4 (80–90%)", 0.8, 0.9),
    ("Zone 5 (90–100%)", 0.9, 1.0),
]

PERIOD_WINDOW_DAYS = 5
DEFAULT_CYCLE_LENGTH = 28


def round_half_up(value):
    # Half-up, so 2.5 -> 3 rather than Python's banker's rounding
    return int(math.floor(value + 0.5))


def _positive(value, name):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number")
    if not math.isfinite(number) or number <= 0:
        raise ValueError(f"{name} must be positive")
    return number


def bmi_category(value):
    if value < 18.5:
        return "Underweight"
    elif value < 25:
        return "Normal"
    elif value < 30:
        return "Overweight"
    return "Obese"


def bmi(height, weight, unit="metric"):
    """
    Body Mass Index.
    Metric expects metres and kilograms, imperial inches and pounds.
    """
    h = _positive(height, "height")
    w = _positive(weight, "weight")
    if unit == "imperial":
        h = h * INCH_TO_M
        w = w * LB_TO_KG
    value = w / (h * h)
    return {"bmi": round(value, 2), "category": bmi_category(value)}


def bmr(sex, age, height_cm, weight_kg, activity="moderate"):
    """
    Mifflin-St Jeor BMR plus TDEE for an activity level.
    Unknown activity levels fall back to moderate.
    """
    if sex not in ("male", "female"):
        raise ValueError("sex must be male or female")
    age = _positive(age, "age")
    height_cm = _positive(height_cm, "height")
    weight_kg = _positive(weight_kg, "weight")

    base = 10 * weight_kg + 6.25 * height_cm - 5 * age
    value = base + 5 if sex == "male" else base - 161

    factor = ACTIVITY_FACTORS.get(activity, ACTIVITY_FACTORS["moderate"])
    return {"bmr": round_half_up(value), "tdee": round_half_up(value * factor), "activity": activity}


def heart_rate_zones(age):
    age = int(_positive(age, "age"))
    max_hr = 220 - age
    zones = [
        {"name": name, "min": round_half_up(max_hr * low), "max": round_half_up(max_hr * high)}
        for name, low, high in HR_ZONES
    ]
    return {"max": max_hr, "zones": zones}


def macros(calories, goal="maintain"):
    """30% protein / 40% carbs / 30% fat of the goal-adjusted calories."""
    calories = _positive(calories, "calories")
    target = round_half_up(calories * (1 + GOAL_ADJUSTMENT.get(goal, 0.0)))

    protein_cals = round_half_up(target * 0.30)
    carbs_cals = round_half_up(target * 0.40)
    fat_cals = round_half_up(target * 0.30)
    return {
        "calories": target,
        "protein_g": round_half_up(protein_cals / 4),
        "carbs_g": round_half_up(carbs_cals / 4),
        "fat_g": round_half_up(fat_cals / 9),
    }


def water_intake(weight, unit="metric", activity="moderate", climate="temperate"):
    weight = _positive(weight, "weight")
    weight_kg = weight * LB_TO_KG if unit == "imperial" else weight

    ml = weight_kg * 35
    ml += WATER_ACTIVITY_ML.get(activity, WATER_ACTIVITY_ML["moderate"])
    ml += WATER_CLIMATE_ML.get(climate, 0)
    ml = max(WATER_MIN_ML, min(WATER_MAX_ML, round_half_up(ml)))

    return {
        "ml": ml,
        "liters": f"{ml / 1000:.2f}",
        "cups": f"{ml / 240:.1f}",
    }


def next_period_window(start_date, cycle_length=None):
    """Predicted next period: start + cycle length, lasting 5 days."""
    cycle = cycle_length or DEFAULT_CYCLE_LENGTH
    next_start = start_date + timedelta(days=cycle)
    next_end = next_start + timedelta(days=PERIOD_WINDOW_DAYS)
    return {"start": next_start.isoformat(), "end": next_end.isoformat(), "cycle": cycle}
