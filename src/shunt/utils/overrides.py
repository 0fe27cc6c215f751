"""Default environment overrides for intercepted containers."""

from typing import Callable, Dict

from shunt.models.interception import OverrideContext


# (proxy port, CA path, current env, context) -> extra env vars
EnvOverrideFunc = Callable[[int, str, Dict[str, str], OverrideContext], Dict[str, str]]


def _prepend_path(new_entry: str, existing: str) -> str:
    return f"{new_entry}:{existing}" if existing else new_entry


def terminal_env_overrides(
    proxy_port: int,
    cert_path: str,
    env: Dict[str, str],
    context: OverrideContext,
) -> Dict[str, str]:
    """Env vars pointing common HTTP clients at the proxy and trusting its CA."""
    proxy_url = f"http://{context.host_ip}:{proxy_port}"
    override_path = context.override_path.rstrip("/")

    overrides = {
        "http_proxy": proxy_url,
        "HTTP_PROXY": proxy_url,
        "https_proxy": proxy_url,
        "HTTPS_PROXY": proxy_url,
        # Make sure the proxy is used for everything, including local hosts
        "no_proxy": "",
        "NO_PROXY": "",
        "SSL_CERT_FILE": cert_path,
        "REQUESTS_CA_BUNDLE": cert_path,
        "NODE_EXTRA_CA_CERTS": cert_path,
        "CURL_CA_BUNDLE": cert_path,
        "GIT_SSL_CAINFO": cert_path,
        "HTTP_TOOLKIT_ACTIVE": "true",
    }

    # Without an explicit PATH the engine's default applies, which must survive
    if "PATH" in env:
        overrides["PATH"] = _prepend_path(f"{override_path}/path", env["PATH"])
    overrides["PYTHONPATH"] = _prepend_path(
        f"{override_path}/pythonpath", env.get("PYTHONPATH", "")
    )

    return overrides
