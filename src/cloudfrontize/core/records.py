"""
Lifecycle Records

Builders and helpers for the CloudFront-style event records.

Header multimap shape (keyed by lowercase name, original casing kept):

    {'accept-encoding': [{'key': 'Accept-Encoding', 'value': 'gzip, br'}]}

Request record:  {method, uri, querystring, headers}
Response record: {status, statusDescription, headers}
"""

from http import HTTPStatus
from typing import Any, Dict, List, Mapping, Optional

STAGES = ('viewer-request', 'origin-request', 'origin-response', 'viewer-response')
REQUEST_STAGES = ('viewer-request', 'origin-request')
RESPONSE_STAGES = ('origin-response', 'viewer-response')

Headers = Dict[str, List[Dict[str, str]]]


def _header_value(value: Any) -> str:
    """Accept a plain value, a [{key, value}] list or a {value} object"""
    if isinstance(value, list):
        if value and isinstance(value[0], Mapping) and 'value' in value[0]:
            return str(value[0]['value'])
        return ', '.join(str(v) for v in value)
    if isinstance(value, Mapping) and 'value' in value:
        return str(value['value'])
    return str(value)


def to_multimap(headers: Optional[Mapping[str, Any]]) -> Headers:
    """Normalize inbound headers into the lowercase-keyed multimap"""
    multimap: Headers = {}
    if not isinstance(headers, Mapping):
        return multimap
    for name, value in headers.items():
        name = str(name)
        multimap[name.lower()] = [{'key': name, 'value': _header_value(value)}]
    return multimap


def flatten_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """
    Collapse a multimap into {display-name: value}.

    The display name is the `key` of the first entry (falls back to the
    lowercase name). Several values for one name are joined with ", ".
    """
    flat: Dict[str, str] = {}
    if not isinstance(headers, Mapping):
        return flat
    for name, entries in headers.items():
        name = str(name)
        if isinstance(entries, list):
            values = [e for e in entries if isinstance(e, Mapping) and 'value' in e]
            if not values:
                continue
            display = values[0].get('key') or name
            flat[display] = ', '.join(str(e['value']) for e in values)
        else:
            flat[name] = _header_value(entries)
    return flat


def build_request_record(request: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Build a request record from what the HTTP layer hands us.

    Args:
        request: {'method', 'url', 'headers'} (all optional)
    """
    uri, _, querystring = (request.get('url') or '').partition('?')
    return {
        'method': request.get('method') or 'GET',
        'uri': uri or '/',
        'querystring': querystring,
        'headers': to_multimap(request.get('headers')),
    }


def build_response_record(response: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Build a response record from {'status', 'statusDescription', 'headers'}"""
    response = response or {}
    status = int(response.get('status') or 200)
    description = response.get('statusDescription') or response.get('status_description')
    if not description:
        try:
            description = HTTPStatus(status).phrase
        except ValueError:
            description = ''
    return {
        'status': str(status),
        'statusDescription': description,
        'headers': to_multimap(response.get('headers')),
    }


def join_path(uri: str, querystring: Optional[str]) -> str:
    """Re-join path and query string into one addressable path"""
    return f'{uri}?{querystring}' if querystring else uri


def is_generated_response(result: Mapping[str, Any]) -> bool:
    """A request-stage result with a status and no path is a generated response"""
    return result.get('status') not in (None, '') and 'uri' not in result
