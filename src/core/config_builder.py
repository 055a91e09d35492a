PROXY_ENV_TEMPLATE = """# Généré par ptun, supprimé à l'arrêt du tunnel
http_proxy={url}
https_proxy={url}
HTTP_PROXY={url}
HTTPS_PROXY={url}
no_proxy={no_proxy}
NO_PROXY={no_proxy}
"""

SETTINGS_TEMPLATE = """[Tunnel]
Address = {address}/{mask}
Remote = {remote}
MTU = {mtu}

[Routes]
Included = {included}
Excluded = {excluded}

[DNS]
Servers = {dns}
MatchDomains = {dns_domains}

[Proxy]
HTTP = {http}
HTTPS = {https}
MatchDomains = {proxy_domains}
ExcludeSimpleHostnames = {exclude_simple}
"""


def _routes(routes):
    if not routes:
        return "-"
    return ", ".join(f"{r.destination}/{r.subnet_mask}" for r in routes)


def _domains(domains):
    # [""] signifie "tous les domaines"
    if domains == [""]:
        return "*"
    return ", ".join(domains) or "-"


def generate_proxy_env(settings):
    proxy = settings.proxy
    server = proxy.https_server or proxy.http_server
    # simple hostnames non exclus : no_proxy vide
    no_proxy = "" if not proxy.exclude_simple_hostnames else "localhost,127.0.0.1"
    return PROXY_ENV_TEMPLATE.format(
        url=f"http://{server.address}:{server.port}",
        no_proxy=no_proxy,
    )


def generate_settings_summary(settings):
    ipv4 = settings.ipv4
    proxy = settings.proxy
    return SETTINGS_TEMPLATE.format(
        address=", ".join(ipv4.addresses),
        mask=", ".join(ipv4.subnet_masks),
        remote=settings.tunnel_remote_address,
        mtu=settings.mtu,
        included=_routes(ipv4.included_routes),
        excluded=_routes(ipv4.excluded_routes),
        dns=", ".join(settings.dns.servers),
        dns_domains=_domains(settings.dns.match_domains),
        http=proxy.http_server if proxy.http_enabled else "off",
        https=proxy.https_server if proxy.https_enabled else "off",
        proxy_domains=_domains(proxy.match_domains),
        exclude_simple="yes" if proxy.exclude_simple_hostnames else "no",
    )
