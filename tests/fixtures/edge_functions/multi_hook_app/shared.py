"""
Helpers shared by the multi-hook app. Not a hook itself.
"""

CACHE_CONTROL = 'public, max-age=86400'


def set_header(headers, name, value):
    headers[name.lower()] = [{'key': name, 'value': value}]
