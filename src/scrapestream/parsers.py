"""Parsing of proxy URLs and V2Ray-family share links into ProxyRecords."""

import base64
import binascii
import json
import logging
from typing import Dict, Iterable, List, Tuple
from urllib.parse import parse_qs, unquote, urlparse

from .constants import MAX_PORT, MAX_PROXY_LINE_LENGTH
from .errors import ProxyParseError
from .models import ProxyProtocol, ProxyRecord, V2RayParams

logger = logging.getLogger(__name__)

V2RAY_SCHEMES = ("vless://", "vmess://", "ss://", "trojan://")
STANDARD_SCHEMES = {
    "socks5": ProxyProtocol.SOCKS5,
    "socks4": ProxyProtocol.SOCKS4,
    "http": ProxyProtocol.HTTP,
    "https": ProxyProtocol.HTTPS,
}

# Query keys shared by vless:// and trojan:// links
_QUERY_FIELDS = {
    "type": "transport",
    "security": "security",
    "sni": "sni",
    "path": "path",
    "host": "ws_host",
    "alpn": "alpn",
    "fp": "fingerprint",
    "pbk": "public_key",
    "sid": "short_id",
    "encryption": "encryption",
    "flow": "flow",
}


def _b64_decode(data: str) -> str:
    """Decode standard or URL-safe base64, tolerating missing padding."""
    cleaned = "".join(data.split())
    cleaned += "=" * ((4 - len(cleaned) % 4) % 4)
    altchars = b"-_" if ("-" in cleaned or "_" in cleaned) else None
    try:
        return base64.b64decode(cleaned, altchars=altchars, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ProxyParseError(f"Invalid base64 payload: {exc}") from exc


def _port(value: str) -> int:
    # Share links sometimes carry trailing garbage after the port digits
    digits = ""
    for char in value.strip():
        if not char.isdigit():
            break
        digits += char
    if not digits:
        raise ProxyParseError(f"Missing port in {value!r}")
    port = int(digits)
    if not (1 <= port <= MAX_PORT):
        raise ProxyParseError(f"Port out of range: {port}")
    return port


def _host_port(value: str) -> Tuple[str, int]:
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ProxyParseError(f"Invalid IPv6 host:port {value!r}")
        return host, _port(rest[1:])
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise ProxyParseError(f"Expected host:port, got {value!r}")
    return host.strip(), _port(port)


def _split_fragment(content: str) -> Tuple[str, str]:
    main, _, fragment = content.partition("#")
    return main, unquote(fragment).strip()


def _query_params(query: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for key, values in parse_qs(query).items():
        field = _QUERY_FIELDS.get(key)
        if field and values:
            params[field] = values[0]
    return params


def clean_proxy_line(line: str) -> str:
    """Normalise one input line; a space-separated comment becomes the fragment."""
    url = line.strip()
    if not url:
        raise ProxyParseError("Proxy line is empty")
    space = url.find(" ")
    if space < 0:
        return url
    if url.startswith(V2RAY_SCHEMES):
        hash_index = url.find("#")
        if 0 <= hash_index < space:
            return url
        main, comment = url[:space], url[space:].strip().lstrip("#").strip()
        if "#" not in main and comment:
            return f"{main}#{comment}"
        return main
    return url[:space]


def _parse_standard(url: str) -> ProxyRecord:
    scheme, sep, rest = url.partition("://")
    if sep:
        protocol = STANDARD_SCHEMES.get(scheme.lower())
        if protocol is None:
            raise ProxyParseError(f"Unsupported proxy scheme: {scheme}")
    else:
        protocol, rest = ProxyProtocol.SOCKS5, url

    username = password = ""
    if "@" in rest:
        auth, rest = rest.rsplit("@", 1)
        username, _, password = auth.partition(":")
    rest = rest.split("/", 1)[0]
    host, port = _host_port(rest)
    return ProxyRecord(
        protocol=protocol,
        host=host,
        port=port,
        username=unquote(username),
        password=unquote(password),
    )


def _parse_vless(url: str) -> ProxyRecord:
    main, name = _split_fragment(url[len("vless://") :])
    main, _, query = main.partition("?")
    user_id, sep, host_port = main.partition("@")
    if not sep or not user_id:
        raise ProxyParseError("VLESS link missing uuid@host:port")
    host, port = _host_port(host_port.rstrip("/"))
    params = V2RayParams(uuid=user_id, original_link=url, **_query_params(query))
    return ProxyRecord(
        protocol=ProxyProtocol.VLESS, host=host, port=port, params=params, description=name
    )


def _parse_vmess(url: str) -> ProxyRecord:
    try:
        data = json.loads(_b64_decode(url[len("vmess://") :]))
    except json.JSONDecodeError as exc:
        raise ProxyParseError(f"VMess payload is not JSON: {exc}") from exc
    if not isinstance(data, dict) or not all(k in data for k in ("add", "port", "id")):
        raise ProxyParseError("VMess payload missing add/port/id")
    try:
        alter_id = int(data.get("aid") or 0)
    except (TypeError, ValueError) as exc:
        raise ProxyParseError(f"Invalid VMess alterId: {data.get('aid')!r}") from exc

    params = V2RayParams(
        uuid=str(data["id"]),
        alter_id=alter_id,
        transport=str(data.get("net") or "tcp"),
        security=str(data.get("tls") or ""),
        path=str(data.get("path") or ""),
        ws_host=str(data.get("host") or ""),
        sni=str(data.get("sni") or ""),
        original_link=url,
    )
    return ProxyRecord(
        protocol=ProxyProtocol.VMESS,
        host=str(data["add"]).strip(),
        port=_port(str(data["port"])),
        params=params,
        description=str(data.get("ps") or ""),
    )


def _parse_shadowsocks(url: str) -> ProxyRecord:
    main, name = _split_fragment(url[len("ss://") :])
    main = main.split("?", 1)[0]
    if "@" in main:
        # SIP002: base64(method:password)@host:port
        user_info, host_port = main.rsplit("@", 1)
        decoded = unquote(user_info)
        if ":" not in decoded:
            decoded = _b64_decode(decoded)
    else:
        # Legacy: base64(method:password@host:port)
        decoded_all = _b64_decode(main)
        decoded, sep, host_port = decoded_all.rpartition("@")
        if not sep:
            raise ProxyParseError("Shadowsocks link missing host")
    method, sep, password = decoded.partition(":")
    if not sep or not method:
        raise ProxyParseError("Shadowsocks link missing method:password")
    host, port = _host_port(host_port.rstrip("/"))
    return ProxyRecord(
        protocol=ProxyProtocol.SHADOWSOCKS,
        host=host,
        port=port,
        password=password,
        params=V2RayParams(encryption=method, original_link=url),
        description=name,
    )


def _parse_trojan(url: str) -> ProxyRecord:
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ProxyParseError("Trojan link missing host")
    try:
        port = parsed.port or 443
    except ValueError as exc:
        raise ProxyParseError(f"Invalid Trojan port: {exc}") from exc
    return ProxyRecord(
        protocol=ProxyProtocol.TROJAN,
        host=parsed.hostname,
        port=port,
        password=unquote(parsed.username or ""),
        params=V2RayParams(original_link=url, **_query_params(parsed.query)),
        description=unquote(parsed.fragment or ""),
    )


_V2RAY_PARSERS = {
    "vless://": _parse_vless,
    "vmess://": _parse_vmess,
    "ss://": _parse_shadowsocks,
    "trojan://": _parse_trojan,
}


def parse_proxy_url(line: str) -> ProxyRecord:
    """Parse one proxy URL, share link or bare ``host:port``.

    Raises:
        ProxyParseError: If the line is not a recognisable proxy.
    """
    if len(line) > MAX_PROXY_LINE_LENGTH:
        raise ProxyParseError(f"Proxy line too long: {len(line)} characters")
    url = clean_proxy_line(line)
    for prefix, parser in _V2RAY_PARSERS.items():
        if url.startswith(prefix):
            try:
                return parser(url)
            except ProxyParseError:
                raise
            except (ValueError, KeyError, IndexError) as exc:
                raise ProxyParseError(f"Invalid {prefix[:-3]} link: {exc}") from exc
    try:
        return _parse_standard(url)
    except ProxyParseError:
        raise
    except ValueError as exc:
        raise ProxyParseError(f"Invalid proxy URL: {exc}") from exc


def parse_proxy_lines(lines: Iterable[str]) -> List[ProxyRecord]:
    """Parse a proxy list, skipping blanks, comments, duplicates and bad lines."""
    proxies: List[ProxyRecord] = []
    seen = set()
    skipped = 0
    for line in lines:
        candidate = line.strip()
        if not candidate or candidate.startswith("#"):
            continue
        try:
            proxy = parse_proxy_url(candidate)
        except ProxyParseError as exc:
            logger.warning("Failed to parse proxy line: %s - %s", candidate[:80], exc)
            continue
        key = (proxy.host.lower(), proxy.port)
        if key in seen:
            skipped += 1
            continue
        seen.add(key)
        proxies.append(proxy)

    logger.info("Parsed %d proxies, skipped %d duplicates", len(proxies), skipped)
    return proxies


def load_proxy_file(path: str) -> List[ProxyRecord]:
    with open(path, "r", encoding="utf-8") as handle:
        return parse_proxy_lines(handle)
