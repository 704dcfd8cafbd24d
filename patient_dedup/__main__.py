# patient_dedup/__main__.py

"""Entry point for executing patient_dedup as a module.

This file allows the patient_dedup package to be executed as a script
using `python -m patient_dedup`.
"""
import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())
