from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, Optional

import httpx
import pytest

from sourcesweep.config import Settings
from sourcesweep.models import JobState, Reachability
from sourcesweep.store import EntityStore

PREFIX = "/lr-admin-api/"


class FakeInventory:
    """In-memory stand-in for the inventory REST API, served over MockTransport."""

    def __init__(self) -> None:
        self.log_sources: Dict[str, Dict[str, Any]] = {}
        self.hosts: Dict[str, Dict[str, Any]] = {}
        self.agents: Dict[str, Dict[str, Any]] = {}
        self.requests: list[tuple[str, str]] = []
        self.failing: set[tuple[str, str]] = set()
        self.wrap_items = False

    # -- fixtures ------------------------------------------------------

    def add_host(self, host_id: int, name: str, ips: Iterable[str] = ()) -> Dict[str, Any]:
        host = {
            "id": host_id,
            "name": name,
            "recordStatusName": "Active",
            "hostRoles": [{"name": "server"}],
            "hostIdentifiers": [
                {"type": "IPAddress", "value": ip, "dateRetired": None} for ip in ips
            ],
            "createdDate": "2020-01-01T00:00:00Z",
        }
        self.hosts[str(host_id)] = host
        return host

    def add_agent(self, agent_id: int, name: str) -> Dict[str, Any]:
        agent = {
            "id": agent_id,
            "name": name,
            "recordStatusName": "Active",
            "licenseType": "SystemMonitorPro",
        }
        self.agents[str(agent_id)] = agent
        return agent

    def add_log_source(
        self,
        source_id: int,
        name: str,
        host_id: int,
        host_name: str,
        type_name: str = "Syslog - Linux Host",
        status: str = "Active",
        max_log_date: str = "2024-01-01T00:00:00Z",
        agent_id: Optional[int] = None,
        agent_name: str = "",
    ) -> Dict[str, Any]:
        source = {
            "id": source_id,
            "name": name,
            "recordStatus": status,
            "maxLogDate": max_log_date,
            "host": {"id": host_id, "name": host_name},
            "logSourceType": {"name": type_name},
            "systemMonitorId": agent_id,
            "systemMonitorName": agent_name,
        }
        self.log_sources[str(source_id)] = source
        return source

    # -- inspection ----------------------------------------------------

    @property
    def writes(self) -> list[tuple[str, str]]:
        return [r for r in self.requests if r[0] in ("PUT", "POST", "DELETE")]

    def fail(self, method: str, path: str) -> None:
        self.failing.add((method, path))

    # -- transport -----------------------------------------------------

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(lambda request: self.handle(request))

    def _collection(self, kind: str) -> Dict[str, Dict[str, Any]]:
        return {"logsources": self.log_sources, "hosts": self.hosts, "agents": self.agents}[kind]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len(PREFIX):]
        method = request.method
        self.requests.append((method, path))
        if (method, path) in self.failing:
            return httpx.Response(500, text="simulated failure")
        body = json.loads(request.content) if request.content else None
        parts = path.split("/")

        if parts == ["logsources"] and method == "GET":
            return self._list_log_sources(request.url.params)
        if len(parts) == 2 and parts[0] in ("logsources", "hosts", "agents"):
            records = self._collection(parts[0])
            if parts[1] not in records:
                return httpx.Response(404, text="not found")
            if method == "GET":
                return httpx.Response(200, json=records[parts[1]])
            if method == "PUT":
                # fields missing from the body keep their stored value
                records[parts[1]] = {**records[parts[1]], **body}
                return httpx.Response(200, json=body)
        if len(parts) == 3 and parts[0] == "hosts" and parts[2] == "identifiers":
            host = self.hosts.get(parts[1])
            if host is None:
                return httpx.Response(404, text="not found")
            identifiers = host.setdefault("hostIdentifiers", [])
            wanted = {(i["type"], i["value"]) for i in body["hostIdentifiers"]}
            if method == "DELETE":
                for item in identifiers:
                    if (item["type"], item["value"]) in wanted:
                        item["dateRetired"] = "2026-01-01T00:00:00Z"
                return httpx.Response(204)
            if method == "POST":
                known = {(i["type"], i["value"]): i for i in identifiers}
                for key in wanted:
                    if key in known:
                        known[key]["dateRetired"] = None
                    else:
                        identifiers.append({"type": key[0], "value": key[1], "dateRetired": None})
                return httpx.Response(201)
        return httpx.Response(405, text="unsupported")

    def _list_log_sources(self, params: httpx.QueryParams) -> httpx.Response:
        items = list(self.log_sources.values())
        if "hostId" in params:
            items = [s for s in items if str(s["host"]["id"]) == params["hostId"]]
        if "systemMonitorId" in params:
            items = [s for s in items if str(s["systemMonitorId"]) == params["systemMonitorId"]]
        if params.get("recordStatus") == "active":
            items = [s for s in items if s["recordStatus"] != "Retired"]
        offset = int(params.get("offset", 0))
        count = int(params.get("count", 1000))
        page = items[offset:offset + count]
        if self.wrap_items:
            return httpx.Response(200, json={"items": page})
        return httpx.Response(200, json=page)


def make_prober(reachable: Iterable[str] = ()):
    """Prober stand-in: hosts in ``reachable`` answer, everything else does not."""
    up = set(reachable)

    def probe(hostnames):
        return {
            h: Reachability.REACHABLE if h in up else Reachability.UNREACHABLE
            for h in hostnames
        }
    return probe


def wait_for_job(engine, job_id: str, timeout: float = 5.0):
    """Poll the registry until the job leaves the running state."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = engine.get_job(job_id)
        if job is not None and job.status is not JobState.RUNNING:
            return job
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} still running after {timeout}s")


@pytest.fixture
def inventory():
    return FakeInventory()


@pytest.fixture
def settings(tmp_path):
    return Settings.model_validate({
        "inventory": {"hostname": "siem.test", "api_key": "secret-token"},
        "rollback": {"backup_location": str(tmp_path / "rollback")},
    })


@pytest.fixture
def store(inventory, settings):
    with EntityStore(settings.inventory, transport=inventory.transport) as s:
        yield s


@pytest.fixture
def engine(settings, store):
    from sourcesweep.engine import Engine
    return Engine(settings, store=store, prober=make_prober())


@pytest.fixture
def stale_host(inventory):
    """One unreachable host with two stale candidate log sources on one agent."""
    inventory.add_host(10, "web-01", ips=["10.0.0.10", "10.0.0.11"])
    inventory.add_agent(7, "collector-01")
    inventory.add_log_source(100, "web-01 syslog", 10, "web-01", agent_id=7,
                             agent_name="collector-01")
    inventory.add_log_source(101, "web-01 auth", 10, "web-01", agent_id=7,
                             agent_name="collector-01")
    return inventory
