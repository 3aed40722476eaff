"""测试集群 API 客户端与 etcd 客户端。"""

import json

import httpx
import pytest

from kubeboot import constants
from kubeboot.utils import apiclient, etcd


def api_transport(routes: dict[tuple[str, str], httpx.Response], seen: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return routes.get((request.method, request.url.path), httpx.Response(404, text="not found"))

    return httpx.MockTransport(handler)


class TestKubeClient:
    """测试 httpx 客户端。"""

    def setup_method(self):
        """每个测试方法前的设置。"""
        self.seen: list[httpx.Request] = []

    def client(self, routes, token=""):
        return apiclient.KubeClient(
            "https://10.0.0.10:6443", token=token, transport=api_transport(routes, self.seen),
        )

    def test_get_returns_json(self):
        client = self.client({("GET", "/api/v1/nodes/node-1"): httpx.Response(200, json={"kind": "Node"})})

        assert client.get("/api/v1/nodes/node-1") == {"kind": "Node"}

    def test_get_missing_returns_none(self):
        assert self.client({}).get("/api/v1/nodes/node-2") is None

    def test_create_conflict(self):
        client = self.client({("POST", "/api/v1/namespaces/kube-system/configmaps"): httpx.Response(409)})

        with pytest.raises(apiclient.AlreadyExistsError):
            client.create("/api/v1/namespaces/kube-system/configmaps", {"metadata": {"name": "x"}})

    def test_server_error(self):
        client = self.client({("PUT", "/api/v1/nodes/node-1"): httpx.Response(500, text="boom")})

        with pytest.raises(apiclient.ApiError) as exc_info:
            client.update("/api/v1/nodes/node-1", {})
        assert exc_info.value.status_code == 500

    def test_delete_missing_is_ignored(self):
        self.client({}).delete("/api/v1/nodes/node-1")

    def test_bearer_token_header(self):
        client = self.client({("GET", "/api/v1/nodes/node-1"): httpx.Response(200, json={})}, token="abc")

        client.get("/api/v1/nodes/node-1")

        assert self.seen[0].headers["Authorization"] == "Bearer abc"

    def test_create_sends_json(self):
        client = self.client({("POST", "/api/v1/nodes"): httpx.Response(201, json={})})

        client.create("/api/v1/nodes", {"metadata": {"name": "n"}})

        assert json.loads(self.seen[0].content) == {"metadata": {"name": "n"}}

    def test_healthy(self):
        assert self.client({("GET", "/healthz"): httpx.Response(200, text="ok")}).healthy() is True
        assert self.client({("GET", "/healthz"): httpx.Response(500, text="err")}).healthy() is False


class TestDryRunClient:
    """测试 dry-run 客户端。"""

    def setup_method(self):
        """每个测试方法前的设置。"""
        self.lines: list[str] = []
        self.client = apiclient.DryRunClient(node_name="node-1", out=self.lines.append)

    def test_writes_are_printed_and_readable(self):
        cm = apiclient.new_configmap("kube-system", "demo", {"k": "v"})

        self.client.create(apiclient.configmaps_path("kube-system"), cm)

        assert any("Would perform action CREATE" in line for line in self.lines)
        assert apiclient.get_configmap_data(self.client, "kube-system", "demo") == {"k": "v"}

    def test_fake_node(self):
        node = self.client.get(apiclient.node_path("node-1"))

        assert node["metadata"]["name"] == "node-1"
        assert self.client.get(apiclient.node_path("node-2")) is None

    def test_healthy(self):
        assert self.client.healthy() is True


class TestHelpers:
    """测试对象辅助函数。"""

    @pytest.fixture(autouse=True)
    def _setup(self, fake_client):
        self.client = fake_client
        self.path = apiclient.configmaps_path("kube-system")

    def test_create_or_update(self):
        apiclient.create_or_update(self.client, self.path, apiclient.new_configmap("kube-system", "a", {"v": "1"}))
        apiclient.create_or_update(self.client, self.path, apiclient.new_configmap("kube-system", "a", {"v": "2"}))

        assert apiclient.get_configmap_data(self.client, "kube-system", "a") == {"v": "2"}

    def test_create_or_retain(self):
        apiclient.create_or_retain(self.client, self.path, apiclient.new_configmap("kube-system", "a", {"v": "1"}))
        apiclient.create_or_retain(self.client, self.path, apiclient.new_configmap("kube-system", "a", {"v": "2"}))

        assert apiclient.get_configmap_data(self.client, "kube-system", "a") == {"v": "1"}

    def test_patch_node(self):
        path = apiclient.node_path("node-1")
        self.client.objects[path] = {"metadata": {"name": "node-1"}}

        apiclient.patch_node(self.client, "node-1", lambda n: n["metadata"]["labels"].update({"a": "b"}))

        assert self.client.objects[path]["metadata"]["labels"] == {"a": "b"}
        assert self.client.objects[path]["spec"] == {}

    def test_patch_missing_node(self):
        with pytest.raises(apiclient.ApiError, match="not found"):
            apiclient.patch_node(self.client, "node-1", lambda n: None)

    def test_node_is_ready(self):
        ready = {"status": {"conditions": [{"type": "Ready", "status": "True"}]}}
        not_ready = {"status": {"conditions": [{"type": "Ready", "status": "False"}]}}

        assert apiclient.node_is_ready(ready) is True
        assert apiclient.node_is_ready(not_ready) is False
        assert apiclient.node_is_ready({}) is False

    def test_wait_for_api(self):
        apiclient.wait_for_api(self.client, timeout=0, interval=0)

    def test_wait_for_api_timeout(self):
        self.client.is_healthy = False

        with pytest.raises(TimeoutError):
            apiclient.wait_for_api(self.client, timeout=0, interval=0)


MEMBERS = {
    "members": [
        {"ID": "1", "name": "cp-1", "peerURLs": ["https://10.0.0.10:2380"], "clientURLs": ["https://10.0.0.10:2379"]},
        {"ID": "2", "name": "cp-2", "peerURLs": ["https://10.0.0.11:2380"], "clientURLs": ["https://10.0.0.11:2379"]},
    ],
}


class TestEtcdClient:
    """测试 etcd 客户端。"""

    def setup_method(self):
        """每个测试方法前的设置。"""
        self.bodies: list[tuple[str, dict]] = []
        self.down: set[str] = set()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host in self.down:
                raise httpx.ConnectError("connection refused", request=request)
            body = json.loads(request.content or b"{}")
            self.bodies.append((request.url.path, body))
            if request.url.path == "/v3/cluster/member/list":
                return httpx.Response(200, json=MEMBERS)
            if request.url.path == "/v3/cluster/member/add":
                members = MEMBERS["members"] + [{"ID": "3", "peerURLs": body["peerURLs"]}]
                return httpx.Response(200, json={"member": {"ID": "3"}, "members": members})
            if request.url.path == "/v3/cluster/member/remove":
                return httpx.Response(200, json={"members": MEMBERS["members"][:1]})
            if request.url.path == "/v3/maintenance/status":
                return httpx.Response(200, json={})
            return httpx.Response(404)

        self.transport = httpx.MockTransport(handler)

    def client(self, endpoints=("https://10.0.0.10:2379",)):
        return etcd.EtcdClient(list(endpoints), transport=self.transport)

    def test_list_members(self):
        members = self.client().list_members()

        assert [m.name for m in members] == ["cp-1", "cp-2"]
        assert members[1].id == 2

    def test_get_member_id(self):
        client = self.client()

        assert client.get_member_id("https://10.0.0.11:2380") == 2
        with pytest.raises(etcd.EtcdError):
            client.get_member_id("https://10.0.0.99:2380")

    def test_add_member_names_new_member(self):
        members = self.client().add_member("cp-3", "https://10.0.0.12:2380")

        assert members[-1].name == "cp-3"
        assert self.bodies[-1] == ("/v3/cluster/member/add", {"peerURLs": ["https://10.0.0.12:2380"]})

    def test_add_member_invalid_url(self):
        with pytest.raises(etcd.EtcdError, match="error parsing"):
            self.client().add_member("cp-3", "10.0.0.12")

    def test_remove_member(self):
        members = self.client().remove_member(2)

        assert self.bodies[-1] == ("/v3/cluster/member/remove", {"ID": "2"})
        assert [m.id for m in members] == [1]

    def test_failover_to_next_endpoint(self):
        self.down.add("10.0.0.10")

        members = self.client(["https://10.0.0.10:2379", "https://10.0.0.11:2379"]).list_members()

        assert len(members) == 2

    def test_sync_uses_member_client_urls(self):
        client = self.client()

        client.sync()

        assert client.endpoints == ["https://10.0.0.10:2379", "https://10.0.0.11:2379"]

    def test_cluster_unhealthy(self, monkeypatch):
        monkeypatch.setattr(etcd.time, "sleep", lambda _: None)
        self.down.add("10.0.0.10")

        with pytest.raises(etcd.EtcdError, match="timeout"):
            self.client().wait_for_cluster_available(retries=2, interval=0)

    def test_cluster_available(self):
        assert self.client().wait_for_cluster_available(retries=1) is True

    def test_endpoints_from_pods(self, fake_client):
        client = fake_client
        pods = apiclient.pods_path(constants.KUBE_SYSTEM_NAMESPACE)
        client.objects[f"{pods}/etcd-cp-1"] = {
            "metadata": {
                "name": "etcd-cp-1",
                "annotations": {constants.ANNOTATION_ETCD_ADVERTISE_CLIENT_URLS: "https://10.0.0.10:2379"},
            },
        }

        assert etcd.get_etcd_endpoints(client) == ["https://10.0.0.10:2379"]

    def test_no_endpoints(self, fake_client):
        with pytest.raises(etcd.EtcdError):
            etcd.get_etcd_endpoints(fake_client)

    def test_urls(self):
        assert etcd.get_client_url("10.0.0.10") == "https://10.0.0.10:2379"
        assert etcd.get_peer_url("fd00::1") == "https://[fd00::1]:2380"
