from .base import BaseOperator, EmptyOperator
from .python import PythonOperator
from .bash import BashOperator
from .sensors import BaseSensor, PythonSensor, TimeDeltaSensor

__all__ = [
    "BaseOperator",
    "EmptyOperator",
    "PythonOperator",
    "BashOperator",
    "BaseSensor",
    "PythonSensor",
    "TimeDeltaSensor",
]
