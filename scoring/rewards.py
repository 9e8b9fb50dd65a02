# Base credits per incident type (100 credits = $1).
REPORT_BASE_CREDITS: dict[str, int] = {
    "dangerous_driving": 10,
    "crime": 15,
    "security": 10,
    "other": 5,
    "infrastructure_pothole": 5,
    "infrastructure_road_damage": 8,
    "infrastructure_construction": 5,
    "infrastructure_signage": 6,
    "infrastructure_lighting": 5,
    "weather_flooding": 12,
    "weather_ice": 12,
    "weather_debris": 8,
    "weather_visibility": 10,
    "weather_obstruction": 8,
    "traffic_congestion": 3,
    "traffic_accident": 10,
    "traffic_closure": 7,
    "traffic_signal_issue": 6,
    "traffic_unusual_pattern": 5,
}

QUALITY_BONUSES: dict[str, int] = {
    "has_video": 5,
    "has_gps": 3,
}


def report_base_credits(report_type: str, has_video: bool = False, has_gps: bool = False, default: int = 5) -> int:
    """Credits a report earns before the tier multiplier is applied."""
    credits = REPORT_BASE_CREDITS.get(report_type, default)
    if has_video:
        credits += QUALITY_BONUSES["has_video"]
    if has_gps:
        credits += QUALITY_BONUSES["has_gps"]
    return credits
