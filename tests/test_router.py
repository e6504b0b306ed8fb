"""Tests for mapping observed objects to policies."""

from autopolicy.models import DEFAULT_WORKLOAD_KINDS, ObjectRef, Workload
from autopolicy.router import PolicyRouter
from autopolicy.store import PolicyStore

DEPLOYMENT = DEFAULT_WORKLOAD_KINDS[0]


def workload(name="web", namespace="default", labels=None):
    return Workload(kind=DEPLOYMENT, namespace=namespace, name=name, labels=labels or {})


class TestRoute:
    """Tests for PolicyRouter.route."""

    def test_no_policies(self):
        router = PolicyRouter(PolicyStore().snapshot)
        assert router.route(workload(labels={"app": "web"})) is None

    def test_routes_to_matching_policy(self, make_policy):
        store = PolicyStore()
        store.upsert(make_policy("web", selector={"matchLabels": {"app": "web"}}))
        store.upsert(make_policy("api", selector={"matchLabels": {"app": "api"}}))
        router = PolicyRouter(store.snapshot)

        assert router.route(workload(labels={"app": "api"})) == ObjectRef(name="api")
        assert router.route(workload(labels={"app": "db"})) is None

    def test_absent_selector_never_routes(self, make_policy):
        store = PolicyStore()
        store.upsert(make_policy("nothing"))
        router = PolicyRouter(store.snapshot)

        assert router.route(workload(labels={"app": "web"})) is None

    def test_namespace_filter_respected(self, make_policy):
        store = PolicyStore()
        store.upsert(make_policy("web", namespace_filter=["ns-a"], selector={"matchLabels": {"app": "x"}}))
        router = PolicyRouter(store.snapshot)

        assert router.route(workload(namespace="ns-a", labels={"app": "x"})) == ObjectRef(name="web")
        assert router.route(workload(namespace="ns-b", labels={"app": "x"})) is None

    def test_overlapping_policies_resolve_by_name(self, make_policy):
        store = PolicyStore()
        # Inserted out of order on purpose
        store.upsert(make_policy("zeta", selector={}))
        store.upsert(make_policy("alpha", selector={"matchLabels": {"app": "web"}}))
        store.upsert(make_policy("mid", selector={}))
        router = PolicyRouter(store.snapshot)

        assert router.route(workload(labels={"app": "web"})) == ObjectRef(name="alpha")
        assert router.route(workload(labels={"app": "db"})) == ObjectRef(name="mid")

    def test_sees_store_updates(self, make_policy):
        store = PolicyStore()
        router = PolicyRouter(store.snapshot)
        target = workload(labels={"app": "web"})

        assert router.route(target) is None
        store.upsert(make_policy("web", selector={"matchLabels": {"app": "web"}}))
        assert router.route(target) == ObjectRef(name="web")
        store.delete("web")
        assert router.route(target) is None


class TestRouteOwner:
    """Tests for PolicyRouter.route_owner."""

    def test_routes_controller_owner(self):
        router = PolicyRouter(PolicyStore().snapshot)
        obj = {
            "metadata": {
                "ownerReferences": [
                    {"kind": "Deployment", "name": "web", "controller": False},
                    {"kind": "AutoPolicy", "name": "web-policy-owner", "controller": True},
                ]
            }
        }
        assert router.route_owner(obj) == ObjectRef(name="web-policy-owner")

    def test_ignores_foreign_owners(self):
        router = PolicyRouter(PolicyStore().snapshot)
        obj = {"metadata": {"ownerReferences": [{"kind": "Deployment", "name": "web", "controller": True}]}}
        assert router.route_owner(obj) is None
        assert router.route_owner({"metadata": {}}) is None
