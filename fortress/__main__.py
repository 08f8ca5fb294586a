#!/usr/bin/env python3
"""
Main entry point for the fortress tool.
"""
from fortress.cli import main

if __name__ == "__main__":
    import sys
    sys.exit(main())
