"""EV charging station booking and slot reservation engine"""

__version__ = "1.0.0"
