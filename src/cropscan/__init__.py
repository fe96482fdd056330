"""CropScan: on-device crop disease detection."""

__version__ = "0.1.0"
