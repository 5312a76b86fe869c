"""
Bass: a Lisp for composing reproducible, content-addressed thunks.
"""

__version__ = "0.1.0"
