"""Great-circle helpers for pothole matching and driving-mode alerts."""
import math

EARTH_RADIUS_M = 6371000


def haversine_distance(lat1, lon1, lat2, lon2):
    """Distance in meters between two WGS84 points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi/2)**2 + math.cos(phi1)*math.cos(phi2)*math.sin(dlambda/2)**2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1-a))


def bearing_deg(lat1, lon1, lat2, lon2):
    """Initial compass bearing from point 1 to point 2, in [0, 360)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlambda = math.radians(lon2 - lon1)

    y = math.sin(dlambda) * math.cos(phi2)
    x = math.cos(phi1)*math.sin(phi2) - math.sin(phi1)*math.cos(phi2)*math.cos(dlambda)
    brng = math.degrees(math.atan2(y, x))
    return (brng + 360) % 360


def angle_between_deg(a, b):
    """Absolute angular difference between two headings, in [0, 180]."""
    diff = abs(a - b) % 360
    return 360 - diff if diff > 180 else diff


def is_ahead(observer_lat, observer_lon, observer_bearing, target_lat, target_lon, tolerance_deg=45.0):
    """True when the target lies within ``tolerance_deg`` of the observer's heading."""
    to_target = bearing_deg(observer_lat, observer_lon, target_lat, target_lon)
    return angle_between_deg(to_target, observer_bearing) <= tolerance_deg


def region_cell(lat, lon, cell_degrees=1.0):
    """Coarse grid cell (lat_index, lon_index) containing a point."""
    return math.floor(lat / cell_degrees), math.floor(lon / cell_degrees)
