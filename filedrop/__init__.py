"""
filedrop: resumable, chunked file uploads onto a local directory.
"""

__version__ = "0.1.0"
