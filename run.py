#!/usr/bin/env python3
"""bk command line runner"""
from bk.cli import main

if __name__ == '__main__':
    main()
