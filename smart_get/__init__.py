"""
SmartGet - segmented HTTP downloader with resume and connection auto-tuning.
"""

__version__ = "1.0.0"
