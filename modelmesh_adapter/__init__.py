"""Runtime adapters that lay out model files and manage model loading for MLServer and OpenVINO Model Server."""

__version__ = "0.1.0"