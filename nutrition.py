import os

import requests

CALORIE_NINJAS_URL = "https://api.calorieninjas.com/v1/nutrition"
REQUEST_TIMEOUT = 10


class NutritionError(Exception):
    pass


def fetch_nutrition(query, api_key=None):
    """
    Looks a food up on CalorieNinjas and returns the list of item dicts
    (name, calories, protein_g, ...).
    """
    key = (api_key if api_key is not None else os.environ.get("CALORIE_NINJAS_KEY", "")).strip()
    if not key:
        raise NutritionError("Missing CalorieNinjas API key")

    try:
        response = requests.get(
            CALORIE_NINJAS_URL,
            params={"query": query},
            headers={"X-Api-Key": key},
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as e:
        raise NutritionError(f"CalorieNinjas request failed: {e}") from e

    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        return payload["items"]
    if isinstance(payload, list):
        return payload
    return []
