import os
import sys

import pytest

# Ensure the backend modules resolve when running from the repository root
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from engine_settings import METALS


def row(sample_id, lat=22.5, lng=78.9, date=None, **metals):
    """One raw input row; metals left out are blank cells"""
    data = {'sample_id': sample_id, 'lat': lat, 'lng': lng}
    for metal in METALS:
        data[metal] = metals.get(metal, '')
    if date is not None:
        data['date'] = date
    return data


@pytest.fixture
def make_row():
    return row
