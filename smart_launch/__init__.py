"""SMART on FHIR launch gateway"""

__version__ = "0.1.0"
