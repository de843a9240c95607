# Landslide survey client - configuration settings

# BLE peripheral (ESP32 rangefinder / inclinometer)
SERVICE_UUID = "4fafc201-1fb5-459e-8fcc-c5c9c331914b"
CHARACTERISTIC_UUID = "beb5483e-36e1-4688-b7f5-ea07361b26a8"
DEVICE_NAME = "ESP32_LANDSLIDE_MOCK"

# Tried in this order when binding the service
CANDIDATE_SERVICE_UUIDS = (
    "4fafc201-1fb5-459e-8fcc-c5c9c331914b",   # primary
    "12345678-1234-1234-1234-123456789abc",   # alternative firmware
    "6e400001-b5a3-f393-e0a9-e50e24dcca9e",   # Nordic UART Service
)

CANDIDATE_DEVICE_NAMES = (
    "ESP32_LANDSLIDE_MOCK",
    "ESP32",
    "ESP32-WROOM",
    "ESP32-DevKit",
    "ESP32_BLE",
    "LANDSLIDE_SENSOR",
)

DEVICE_NAME_HINTS = ("esp", "landslide", "sensor")

SCAN_TIMEOUT_S = 15.0
REQUIRE_LOCATION_FOR_SCAN = True   # Android semantics: no scan without location permission

# Upload endpoint
API_URL = "https://rawangphai.uru.ac.th/api/Points"
USER_ID = "124"
UPLOAD_TIMEOUT_S = 60.0

# Connectivity probe
PROBE_URL = "https://www.google.com"
PROBE_TIMEOUT_S = 5.0

# Photo preparation
IMAGE_MAX_DIMENSION = 400          # px, longest side
IMAGE_JPEG_QUALITY = 50            # 0-100
MAX_PHOTO_BYTES = 1024 * 1024      # compressed photos above this are left out

# Location watch
GPS_TIME_INTERVAL_S = 3.0
GPS_DISTANCE_INTERVAL_M = 1.0
GPS_SERIAL_BAUDRATE = 9600
GPS_SERIAL_TIMEOUT_S = 2.0

# Compass
COMPASS_SAMPLE_INTERVAL_S = 0.1

# Persistence
DB_FILE = "survey.db"
KEY_SURVEY_AREAS = "surveyAreas"
KEY_POINT_DATA = "point{n}Data"
KEY_POINT_META = "point{n}Meta"
KEY_IMAGE = "imagePoint{n}"
KEY_IMAGE_LIST = "imagePoint{n}List"

# Defaults
DEFAULT_OBSERVER = "Rangwat"
DEFAULT_AREA_LABEL = "Survey area"

# Application
APP_NAME = "Landslide Survey Client"
APP_VERSION = "1.0.0"
LOG_FILE = "survey.log"
