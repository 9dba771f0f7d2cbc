"""Tiny haversine helpers for offline travel estimates."""

from math import radians, sin, cos, asin, sqrt


def km(a_lat: float, a_lon: float, b_lat: float, b_lon: float) -> float:
    R = 6371.0  # Earth radius in km
    lat1, lon1, lat2, lon2 = map(radians, [a_lat, a_lon, b_lat, b_lon])  # deg->rad
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2  # haversine
    return 2 * R * asin(sqrt(h))  # arc length in km


def road_km(straight_km: float, road_factor: float) -> float:
    return straight_km * max(road_factor, 1.0)  # roads are never shorter


def minutes_from_km(distance_km: float, speed_kmph: float) -> float:
    if speed_kmph <= 0:
        return 0.0  # guard
    return (distance_km / speed_kmph) * 60.0  # minutes
