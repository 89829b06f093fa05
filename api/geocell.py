"""
Geohash keys and proximity helpers.

A geohash interleaves longitude and latitude bisection bits (longitude
first) and writes them five at a time in base32, so points that are close
together share long key prefixes and sort next to each other. A disc on the
map is covered by a handful of key prefix ranges which a document store can
scan with plain string range queries.
"""
import math

BASE32 = '0123456789bcdefghjkmnpqrstuvwxyz'
BITS_PER_CHAR = 5
MAX_PRECISION = 22
MAX_BITS = MAX_PRECISION * BITS_PER_CHAR

EARTH_RADIUS_KM = 6371
EARTH_MERIDIONAL_CIRCUMFERENCE = 40007860
EARTH_EQUATORIAL_RADIUS = 6378137.0
EARTH_ECCENTRICITY_SQUARED = 0.00669447819799
METERS_PER_DEGREE_LATITUDE = 110574
EPSILON = 1e-12

# Sorts after every base32 character
KEY_END = '~'


def validate_location(lat, lng):
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        raise ValueError("latitude and longitude must be numbers")
    if math.isnan(lat) or math.isnan(lng):
        raise ValueError("latitude and longitude must be numbers")
    if not -90 <= lat <= 90:
        raise ValueError(f"latitude {lat} out of range [-90, 90]")
    if not -180 <= lng <= 180:
        raise ValueError(f"longitude {lng} out of range [-180, 180]")


def encode(lat, lng, precision=10):
    """Geohash of a point, `precision` characters long"""
    validate_location(lat, lng)
    if not 0 < precision <= MAX_PRECISION:
        raise ValueError(f"precision must be between 1 and {MAX_PRECISION}")

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    key = []
    bits = 0
    bit_count = 0
    even = True

    while len(key) < precision:
        value, span = (lng, lng_range) if even else (lat, lat_range)
        mid = (span[0] + span[1]) / 2
        if value > mid:
            bits = (bits << 1) + 1
            span[0] = mid
        else:
            bits = bits << 1
            span[1] = mid
        even = not even
        bit_count += 1
        if bit_count == BITS_PER_CHAR:
            key.append(BASE32[bits])
            bits = 0
            bit_count = 0

    return ''.join(key)


def calculate_distance(lat1, lon1, lat2, lon2):
    """Haversine distance in km"""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) * math.sin(d_lat / 2) +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(d_lon / 2) * math.sin(d_lon / 2))
    # Rounding can push `a` just past 1 for antipodal points
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance(point_a, point_b):
    """Great-circle distance in meters between two (lat, lng) points"""
    return calculate_distance(point_a[0], point_a[1], point_b[0], point_b[1]) * 1000


def meters_to_longitude_degrees(meters, latitude):
    radians = math.radians(latitude)
    num = math.cos(radians) * EARTH_EQUATORIAL_RADIUS * math.pi / 180
    denom = 1 / math.sqrt(1 - EARTH_ECCENTRICITY_SQUARED * math.sin(radians) * math.sin(radians))
    delta_deg = num * denom
    if delta_deg < EPSILON:
        return 360 if meters > 0 else 0
    return min(360, meters / delta_deg)


def wrap_longitude(longitude):
    if -180 <= longitude <= 180:
        return longitude
    adjusted = longitude + 180
    if adjusted > 0:
        return (adjusted % 360) - 180
    return 180 - (-adjusted % 360)


def _longitude_bits_for_resolution(resolution, latitude):
    degrees = meters_to_longitude_degrees(resolution, latitude)
    if abs(degrees) > 0.000001:
        return max(1, math.log2(360 / degrees))
    return 1


def _latitude_bits_for_resolution(resolution):
    if resolution <= 0:
        return MAX_BITS
    return min(math.log2(EARTH_MERIDIONAL_CIRCUMFERENCE / 2 / resolution), MAX_BITS)


def bounding_box_bits(center, radius_meters):
    """Deepest bit count whose cells are still at least `radius_meters` across around `center`"""
    latitude_north, latitude_south, _ = bounding_box_extent(center, radius_meters)
    bits_lat = math.floor(_latitude_bits_for_resolution(radius_meters)) * 2
    bits_lng_north = math.floor(_longitude_bits_for_resolution(radius_meters, latitude_north)) * 2 - 1
    bits_lng_south = math.floor(_longitude_bits_for_resolution(radius_meters, latitude_south)) * 2 - 1
    return min(bits_lat, bits_lng_north, bits_lng_south, MAX_BITS)


def bounding_box_extent(center, radius_meters):
    """(north, south, half_width_degrees) of the box around the disc"""
    lat_degrees = radius_meters / METERS_PER_DEGREE_LATITUDE
    latitude_north = min(90, center[0] + lat_degrees)
    latitude_south = max(-90, center[0] - lat_degrees)
    lng_degrees = max(
        meters_to_longitude_degrees(radius_meters, latitude_north),
        meters_to_longitude_degrees(radius_meters, latitude_south),
    )
    return latitude_north, latitude_south, lng_degrees


def spans_all_longitudes(center, radius_meters):
    """True when the disc reaches a pole or wraps the whole globe east to west"""
    north, south, lng_degrees = bounding_box_extent(center, radius_meters)
    return north >= 90 or south <= -90 or lng_degrees >= 180


def bounding_box_coordinates(center, radius_meters):
    """Center plus the eight corners and edge midpoints of the box around the disc"""
    lat, lng = center
    latitude_north, latitude_south, lng_degrees = bounding_box_extent(center, radius_meters)
    west = wrap_longitude(lng - lng_degrees)
    east = wrap_longitude(lng + lng_degrees)
    return [
        (lat, lng), (lat, west), (lat, east),
        (latitude_north, lng), (latitude_north, west), (latitude_north, east),
        (latitude_south, lng), (latitude_south, west), (latitude_south, east),
    ]


def prefix_range(key, bits):
    """Half-open [start, end) range of every key sharing the first `bits` bits of `key`"""
    precision = math.ceil(bits / BITS_PER_CHAR)
    if len(key) < precision:
        return key, key + KEY_END
    key = key[:precision]
    base = key[:-1]
    last_value = BASE32.index(key[-1])
    significant_bits = bits - len(base) * BITS_PER_CHAR
    unused_bits = BITS_PER_CHAR - significant_bits
    start_value = (last_value >> unused_bits) << unused_bits
    end_value = start_value + (1 << unused_bits)
    if end_value > 31:
        return base + BASE32[start_value], base + KEY_END
    return base + BASE32[start_value], base + BASE32[end_value]


def bounding_cells(center, radius_meters, bits=None):
    """
    Key ranges covering every point within `radius_meters` of `center`.

    Ranges are half-open and may include points outside the radius. `bits`
    asks for a coarser partition than the one sized to the radius; it is
    clamped so the cells never become too small to cover the disc. A disc
    that reaches a pole or wraps all longitudes gets a single range over
    every key.
    """
    validate_location(center[0], center[1])
    if radius_meters < 0:
        raise ValueError("radius must not be negative")
    if spans_all_longitudes(center, radius_meters):
        # The disc covers every longitude in its latitude band and a key
        # range cannot express a latitude band, so scan the whole keyspace
        return [(BASE32[0], KEY_END)]

    query_bits = max(1, bounding_box_bits(center, radius_meters))
    if bits is not None:
        query_bits = max(1, min(int(bits), query_bits))
    precision = math.ceil(query_bits / BITS_PER_CHAR)

    cells = []
    for lat, lng in bounding_box_coordinates(center, radius_meters):
        cell = prefix_range(encode(lat, lng, precision), query_bits)
        if cell not in cells:
            cells.append(cell)
    return cells
