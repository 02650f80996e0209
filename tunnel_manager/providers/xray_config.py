"""
Xray configuration generation
"""

import json
import os
from pathlib import Path
from typing import Dict

from ..core.types import Server


def _stream_settings(credentials: Dict, server: Server) -> Dict:
    network = credentials.get('type', 'tcp')
    security = credentials.get('security', 'none')
    sni = credentials.get('sni') or credentials.get('host') or server.address

    stream = {'network': network, 'security': security}

    if security == 'reality':
        stream['realitySettings'] = {
            'serverName': sni,
            'fingerprint': credentials.get('fp', 'chrome'),
            'publicKey': credentials.get('pbk', ''),
            'shortId': credentials.get('sid', ''),
            'spiderX': credentials.get('spx', ''),
        }
    elif security == 'tls':
        stream['tlsSettings'] = {
            'serverName': sni,
            'fingerprint': credentials.get('fp', 'chrome'),
            'allowInsecure': credentials.get('allowInsecure') in ('1', 'true'),
        }
        if credentials.get('alpn'):
            stream['tlsSettings']['alpn'] = credentials['alpn'].split(',')

    if network == 'ws':
        stream['wsSettings'] = {
            'path': credentials.get('path', '/'),
            'headers': {'Host': credentials.get('host', sni)},
        }
    elif network == 'grpc':
        stream['grpcSettings'] = {
            'serviceName': credentials.get('serviceName', ''),
        }

    return stream


def generate_xray_config(server: Server, socks_port: int = 10808,
                         http_port: int = 10809,
                         listen: str = '127.0.0.1',
                         log_level: str = 'warning') -> Dict:
    """
    Build an Xray client configuration for a server

    Args:
        server: Server to connect through
        socks_port: Local SOCKS inbound port
        http_port: Local HTTP inbound port
        listen: Address the inbounds bind to
        log_level: Xray log level

    Returns:
        Dict ready to be serialized as JSON
    """
    credentials = server.credentials or {}
    user = {
        'id': credentials.get('id', ''),
        'encryption': credentials.get('encryption', 'none'),
    }
    if credentials.get('flow'):
        user['flow'] = credentials['flow']

    return {
        'log': {'loglevel': log_level},
        'inbounds': [
            {
                'tag': 'socks-in',
                'port': socks_port,
                'listen': listen,
                'protocol': 'socks',
                'settings': {'udp': True, 'auth': 'noauth'},
                'sniffing': {'enabled': True, 'destOverride': ['http', 'tls']},
            },
            {
                'tag': 'http-in',
                'port': http_port,
                'listen': listen,
                'protocol': 'http',
                'settings': {},
                'sniffing': {'enabled': True, 'destOverride': ['http', 'tls']},
            },
        ],
        'outbounds': [
            {
                'tag': 'proxy',
                'protocol': server.protocol,
                'settings': {
                    'vnext': [{
                        'address': server.address,
                        'port': server.port,
                        'users': [user],
                    }],
                },
                'streamSettings': _stream_settings(credentials, server),
            },
            {'tag': 'direct', 'protocol': 'freedom'},
            {'tag': 'block', 'protocol': 'blackhole'},
        ],
        'routing': {
            'domainStrategy': 'IPIfNonMatch',
            'rules': [
                {
                    'type': 'field',
                    'ip': ['127.0.0.0/8', '10.0.0.0/8', '172.16.0.0/12', '192.168.0.0/16'],
                    'outboundTag': 'direct',
                },
            ],
        },
    }


def write_config(config: Dict, path: Path) -> Path:
    """Write config JSON to path, overwriting the previous one, and return the path"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config, f, indent=2)

    # Credentials live in this file
    os.chmod(path, 0o600)
    return path
