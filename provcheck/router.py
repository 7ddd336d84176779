"""Route checks against a router under configuration churn.

Requests are sent from an exec pod inside the cluster with curl, resolving
the route host to the router pod IP so no DNS is involved.
"""

import logging
import subprocess

from .errors import ApiError, ConfigurationError, NotFoundError, RouteCheckError
from .wait import poll_until

logger = logging.getLogger(__name__)

TERMINATIONS = ("edge", "reencrypt", "passthrough")
ROUTE_CHECK_TIMEOUT = 240
ROUTER_STATS_PORT = 1936


def wait_for_router_ip(
    k8s, namespace: str, pod_name: str, interval: float = 1, timeout: float = ROUTE_CHECK_TIMEOUT
) -> str:
    """Wait for the router pod to be assigned an IP and return it."""

    def check() -> tuple[bool, str]:
        pod = k8s.get("pod", pod_name, namespace=namespace)
        if pod is None:
            raise NotFoundError("router pod not found", "pod", pod_name, namespace)
        ip = pod.get("status", {}).get("podIP", "")
        return bool(ip), ip

    return poll_until(check, interval, timeout, f"router pod {namespace}/{pod_name} to get an IP")


def default_port(proto: str) -> int:
    return 443 if proto == "https" else 80


def route_url(proto: str, host: str, path: str = "/", port: int = 0) -> str:
    """Build the URL of a route; port 0 means the protocol's default port."""
    return f"{proto}://{host}:{port or default_port(proto)}{path}"


def route_probe_script(host: str, port: int, ip: str, url: str, timeout: int) -> str:
    """Shell loop polling a URL until it answers 200.

    Every response code is printed. 503 means the router does not serve the
    route yet and keeps the loop going; any other code stops it.
    """
    return f"""
set -e
STOP=$(($(date '+%s') + {timeout}))
while [ $(date '+%s') -lt $STOP ]; do
    rc=0
    code=$( curl -k -s -m 5 -o /dev/null -w '%{{http_code}}\\n' --resolve {host}:{port}:{ip} '{url}' ) || rc=$?
    if [[ "${{rc:-0}}" -eq 0 ]]; then
        echo $code
        if [[ $code -eq 200 ]]; then
            exit 0
        fi
        if [[ $code -ne 503 ]]; then
            exit 1
        fi
    else
        echo "error ${{rc}}" 1>&2
    fi
    sleep 1
done
"""


def _run_probe(k8s, namespace: str, exec_pod: str, url: str, script: str, timeout: int) -> None:
    try:
        stdout, stderr, rc = k8s.exec_in_pod(
            exec_pod, ["/bin/bash", "-c", script], namespace=namespace, timeout=timeout + 30
        )
    except subprocess.TimeoutExpired as e:
        raise RouteCheckError(url, f"probe did not finish: {e}") from e

    lines = stdout.strip().splitlines()
    if rc != 0 or not lines or lines[-1].strip() != "200":
        output = stdout + (f"\n{stderr}" if stderr else "")
        raise RouteCheckError(url, output)
    logger.info("route %s answered 200", url)


def wait_for_route_to_respond(
    k8s,
    namespace: str,
    exec_pod: str,
    proto: str,
    host: str,
    path: str,
    router_ip: str,
    port: int = 0,
    timeout: int = ROUTE_CHECK_TIMEOUT,
) -> None:
    """Wait for the router to serve a route.

    Raises:
        RouteCheckError: If the last response was not 200
    """
    port = port or default_port(proto)
    url = route_url(proto, host, path, port)
    script = route_probe_script(host, port, router_ip, url, timeout)
    _run_probe(k8s, namespace, exec_pod, url, script, timeout)


def wait_for_router_healthz(
    k8s, namespace: str, exec_pod: str, router_ip: str, timeout: int = ROUTE_CHECK_TIMEOUT
) -> None:
    """Wait for the router's health endpoint to answer 200."""
    url = f"http://{router_ip}:{ROUTER_STATS_PORT}/healthz"
    script = route_probe_script(router_ip, ROUTER_STATS_PORT, router_ip, url, timeout)
    _run_probe(k8s, namespace, exec_pod, url, script, timeout)


def make_route(
    name: str,
    host: str,
    service: str,
    termination: str | None = None,
    labels: dict[str, str] | None = None,
    namespace: str | None = None,
) -> dict:
    """Build a Route manifest.

    Args:
        name: Route name
        host: Host the route is served on
        service: Backing service
        termination: edge, reencrypt, passthrough, or None for plain HTTP
        labels: Route labels, used by routers to select routes
        namespace: Route namespace

    Returns:
        Route manifest
    """
    if termination is not None and termination not in TERMINATIONS:
        raise ConfigurationError(f"unknown route termination {termination!r}")

    metadata: dict = {"name": name, "labels": dict(labels or {})}
    if namespace:
        metadata["namespace"] = namespace
    spec: dict = {"host": host, "to": {"kind": "Service", "name": service}}
    if termination:
        spec["tls"] = {"termination": termination}
    return {
        "apiVersion": "route.openshift.io/v1",
        "kind": "Route",
        "metadata": metadata,
        "spec": spec,
    }


def route_churn(
    k8s,
    namespace: str,
    exec_pod: str,
    router_ip: str,
    iterations: int = 16,
    domain: str = "hapcm.test",
    insecure_service: str = "insecure-service",
    secure_service: str = "secure-service",
    labels: dict[str, str] | None = None,
    timeout: int = ROUTE_CHECK_TIMEOUT,
) -> None:
    """Repeatedly add, check and remove routes of every kind.

    Each iteration exposes a plain route, then one route per TLS termination.
    Edge routes terminate TLS at the router, so they are backed by the
    insecure service.
    """
    labels = labels if labels is not None else {"select": "haproxy-cfgmgr"}

    def exercise(name: str, host: str, service: str, termination: str | None, proto: str):
        route = make_route(name, host, service, termination, labels, namespace)
        k8s.create(route, namespace=namespace)
        try:
            wait_for_route_to_respond(
                k8s, namespace, exec_pod, proto, host, "/", router_ip, timeout=timeout
            )
        except Exception:
            try:
                k8s.delete("route", name, namespace=namespace)
            except ApiError as e:
                logger.warning("error deleting route %s/%s: %s", namespace, name, e)
            raise
        k8s.delete("route", name, namespace=namespace)

    for i in range(iterations):
        exercise(
            f"hapcm-stress-insecure-{i}",
            f"stress.insecure-{i}.{domain}",
            insecure_service,
            None,
            "http",
        )
        for termination in TERMINATIONS:
            service = insecure_service if termination == "edge" else secure_service
            exercise(
                f"hapcm-stress-{termination}-{i}",
                f"stress.{termination}-{i}.{domain}",
                service,
                termination,
                "https",
            )
