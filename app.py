"""
Entry point for deployments that expect app.py.

The SchoolHub page lives in Welcome.py.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(__file__))

import Welcome  # noqa: E402,F401
