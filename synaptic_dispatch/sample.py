#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Demo data: a small Perth fleet and the map client's three scripted emergencies."""

import copy
from typing import Dict, List

# Map centre of the demo (Perth CBD)
START_POSITION = (-31.9498342, 115.8578795)

SAMPLE_RESOURCES: List[Dict] = [
    {"id": 1, "lat": -31.9498342, "lon": 115.8578795, "capability": "A"},
    {"id": 2, "lat": -31.9523000, "lon": 115.8613000, "capability": "A"},
    {"id": 3, "lat": -31.9440000, "lon": 115.8750000, "capability": "B"},
    {"id": 4, "lat": -31.9610000, "lon": 115.8420000, "capability": "C"},
    {"id": 5, "lat": -31.9350000, "lon": 115.8900000, "capability": "D"},
    {"id": 6, "lat": -31.9700000, "lon": 115.8700000, "capability": "E"},
    {"id": 7, "lat": -31.9200000, "lon": 115.8500000, "capability": "E"},
]

SAMPLE_EMERGENCIES: List[Dict] = [
    {"id": 1, "lat": -32.0, "lon": 115.9, "priority": "Immediate",
     "requirements": [1, 0, 0, 0, 0], "offset": 0},
    {"id": 2, "lat": -33.0, "lon": 115.9, "priority": "Urgent",
     "requirements": [0, 0, 1, 0, 0], "offset": 15000},
    {"id": 3, "lat": -31.0, "lon": 115.9, "priority": "Non-Urgent",
     "requirements": [0, 0, 0, 0, 1], "offset": 6000},
]


def sample_snapshot() -> Dict:
    """The demo in the map client's wire format (`cars` + `emergencies`)."""
    return {
        "cars": copy.deepcopy(SAMPLE_RESOURCES),
        "emergencies": copy.deepcopy(SAMPLE_EMERGENCIES),
    }
