"""
Data plane configuration text.

``generate`` and ``merge`` produce ``main.vcl``; ``collect`` and
``serialize`` produce ``routing.json``. All four are pure functions of their
inputs.
"""
import json

from gateway.objects import ANY_HOSTNAME

GHOST_CONFIG_PATH = '/var/run/varnish/ghost.json'
ROUTING_CONFIG_VERSION = 2
DEFAULT_VHOST = 'default'

PATH_EXACT = 'Exact'
PATH_PREFIX = 'PathPrefix'
PATH_REGEX = 'RegularExpression'

VCL_PREAMBLE = """vcl 4.1;

import ghost;

backend dummy {{ .host = "127.0.0.1"; .port = "80"; }}

sub vcl_init {{
    ghost.init("{config_path}");
    new router = ghost.ghost_backend();
}}

sub vcl_recv {{
    # Handle reload endpoint (localhost only)
    if (req.url == "/.varnish-ghost/reload" && (client.ip == "127.0.0.1" || client.ip == "::1")) {{
        if (router.reload()) {{
            return (synth(200, "OK"));
        }} else {{
            return (synth(500, "Reload failed"));
        }}
    }}
}}

sub vcl_backend_fetch {{
    set bereq.backend = router.backend();
}}

# --- User VCL concatenated below ---
"""


def generate(routes=None, config_path=GHOST_CONFIG_PATH):
    """
    The VCL preamble handing routing over to the ghost vmod.

    Routes are resolved by the vmod from routing.json, so the text does not
    depend on them.
    """
    return VCL_PREAMBLE.format(config_path=config_path)


def split_vcl(text):
    version, imports, body = '', [], []
    for line in text.split('\n'):
        stripped = line.strip()
        if not stripped and not body:
            continue
        if stripped.startswith('vcl ') and stripped.endswith(';'):
            version = stripped
        elif stripped.startswith('import ') and stripped.endswith(';'):
            imports.append(stripped)
        else:
            body.append(line)
    return version, imports, '\n'.join(body).lstrip('\n')


def merge(generated, user):
    """
    Append user VCL to the generated VCL.

    The generated version line comes first, then the generated imports, the
    user's imports that are not already present, the generated body and
    finally the user body. The user's own version line is dropped.
    """
    if not user:
        return generated
    version, generated_imports, generated_body = split_vcl(generated)
    _, user_imports, user_body = split_vcl(user)

    out = []
    if version:
        out.append(version + '\n\n')
    for statement in generated_imports:
        out.append(statement + '\n')
    for statement in user_imports:
        if statement not in generated_imports:
            out.append(statement + '\n')
    out.append('\n')
    for body in (generated_body, user_body):
        if body:
            out.append(body if body.endswith('\n') else body + '\n')
    return ''.join(out)


def route_priority(path=None, method=None, headers=(), query_params=()):
    """
    Higher means more specific.

    >>> route_priority({'type': 'Exact', 'value': '/'})
    10000
    >>> route_priority({'type': 'PathPrefix', 'value': '/api'}, 'GET')
    6040
    """
    priority = 0
    if path is not None:
        if path['type'] == PATH_EXACT:
            priority += 10000
        elif path['type'] == PATH_PREFIX:
            priority += 1000 + len(path['value']) * 10
        elif path['type'] == PATH_REGEX:
            priority += 100
    if method is not None:
        priority += 5000
    priority += min(len(headers), 16) * 1000
    priority += min(len(query_params), 16) * 500
    return priority


def _path_match(match):
    path = match.get('path')
    if path is None:
        return None
    return {'type': path.get('type') or PATH_PREFIX, 'value': path.get('value') or '/'}


def _value_matches(entries):
    return [{'name': e['name'], 'value': e['value'], 'type': e.get('type') or 'Exact'}
            for e in entries or []]


def collect(routes, namespace):
    """
    Flatten routes into ordered ``{hostname, match, backend}`` entries.

    ``routes`` pairs each HTTPRoute with the hostnames it is effective for,
    ANY_HOSTNAME standing for a catch-all route.
    """
    entries = []
    for route, hostnames in routes:
        route_namespace = route.namespace or namespace
        hostnames = [ANY_HOSTNAME] if hostnames is ANY_HOSTNAME else hostnames
        for hostname in hostnames:
            for rule in route.rules:
                matches = rule.get('matches') or [{'path': {'type': PATH_PREFIX, 'value': '/'}}]
                for match in matches:
                    path = _path_match(match)
                    method = match.get('method')
                    headers = _value_matches(match.get('headers'))
                    query_params = _value_matches(match.get('queryParams'))
                    rule_match = {'path': path}
                    if method is not None:
                        rule_match['method'] = method
                    if headers:
                        rule_match['headers'] = headers
                    if query_params:
                        rule_match['queryParams'] = query_params
                    for backend in rule.get('backendRefs') or []:
                        if not backend.get('name'):
                            continue
                        weight = backend.get('weight')
                        entries.append({
                            'hostname': hostname,
                            'match': rule_match,
                            'backend': {
                                'service': backend['name'],
                                'namespace': backend.get('namespace') or route_namespace,
                                'port': backend.get('port') or 80,
                                'weight': 100 if weight is None else weight,
                            },
                            'priority': route_priority(path, method, headers, query_params),
                        })

    def order(entry):
        hostname = '' if entry['hostname'] is ANY_HOSTNAME else entry['hostname']
        return (-entry['priority'], hostname, entry['backend']['service'], entry['backend']['port'])

    return sorted(entries, key=order)


def group_by_host(entries):
    routes_by_host = {}
    for entry in entries:
        routes_by_host.setdefault(entry['hostname'], []).append(entry)
    return routes_by_host


def serialize(routes_by_host):
    """The routing.json document. Catch-all routes live under ``default``."""
    document = {'version': ROUTING_CONFIG_VERSION, 'vhosts': {}}
    for hostname, entries in routes_by_host.items():
        routes = [{
            'match': entry['match'],
            'backend': entry['backend'],
            'priority': entry['priority'],
        } for entry in entries]
        if hostname is ANY_HOSTNAME:
            document[DEFAULT_VHOST] = {'routes': routes}
        else:
            document['vhosts'][hostname] = {'routes': routes}
    return document


def dumps(document):
    return json.dumps(document, indent=2, sort_keys=True)
