from enum import Enum
from typing import NamedTuple


class FuelType(str, Enum):
    PETROL = "petrol"
    DIESEL = "diesel"


class Coordinates(NamedTuple):
    lat: float
    lng: float
