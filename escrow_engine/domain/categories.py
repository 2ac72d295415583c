from enum import Enum


class ServiceCategory(str, Enum):
    FOOD_DELIVERY = "food_delivery"
    PACKAGE_DELIVERY = "package_delivery"
    MOVING = "moving"
    ERRANDS = "errands"
