from __future__ import annotations

import os

CLASSES_TABLE_NAME = os.environ.get("CLASSES_TABLE_NAME", "classes")
RESERVATIONS_TABLE_NAME = os.environ.get("RESERVATIONS_TABLE_NAME", "reservations")

# GSI names on the reservations table
USER_INDEX_NAME = os.environ.get("RESERVATIONS_USER_INDEX", "user_id_index")
CLASS_INDEX_NAME = os.environ.get("RESERVATIONS_CLASS_INDEX", "class_id_index")

MAX_TOTAL_SPOTS = int(os.environ.get("MAX_TOTAL_SPOTS", "50"))

METRICS_NAMESPACE = os.environ.get("POWERTOOLS_METRICS_NAMESPACE", "ClassBookingAPI")
