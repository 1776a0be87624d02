#!/usr/bin/env python3
"""
Run the CloudFrontize static server with edge modules

Usage:
    python run_server.py public --edge edge/ --bake .bake --env .env

Then access:
    http://localhost:3000/            - Served through viewer/origin request hooks
    http://localhost:3000/page?a=1    - Query strings reach the hooks untouched

Edit a file under edge/ (or .bake/.env) and the modules reload in place.
"""
import sys

from cloudfrontize.server import main

if __name__ == "__main__":
    sys.exit(main())
