"""
Basic authentication (viewer-request)

Answers 401 before the cache or the origin is consulted.
"""

stage = 'viewer-request'

USER = 'admin'
PASSWORD = 'pass'


def handler(event, context, callback):
    request = event['Records'][0]['cf']['request']
    headers = request['headers']

    expected = 'Basic ' + b64encode(f'{USER}:{PASSWORD}'.encode()).decode()

    authorization = headers.get('authorization')
    if not authorization or authorization[0]['value'] != expected:
        callback(None, {
            'status': '401',
            'statusDescription': 'Unauthorized',
            'body': 'Unauthorized',
            'headers': {
                'www-authenticate': [{'key': 'WWW-Authenticate', 'value': 'Basic realm="Protected Area"'}],
            },
        })
        return

    callback(None, request)
