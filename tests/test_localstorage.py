import pytest

from carina.configuration import parse_config
from carina.localstorage import (
    MAX_SCORE,
    Code,
    LocalStorage,
    PvcRequest,
    get_lv_exclusivity_disks,
    get_node_storage_resource,
    minimum_value_minus,
    parse_quantity,
)

GIB = 1 << 30


class FakeLister:
    def __init__(self, items=None, fail=False):
        self.items = dict(items or {})
        self.fail = fail

    def get(self, name):
        if self.fail:
            raise RuntimeError("cache not synced")
        return self.items[name]

    def list(self):
        if self.fail:
            raise RuntimeError("cache not synced")
        return list(self.items.values())


class FakeClient:
    def __init__(self, resources=None):
        self.resources = resources or {}

    def get(self, resource, name):
        return self.resources[resource][name]

    def list(self, resource):
        return {"items": list(self.resources.get(resource, {}).values())}


def make_config(strategy="spreadout"):
    return parse_config(
        {
            "diskSelector": [
                {"name": "carina-vg-ssd", "re": ["loop1"], "policy": "LVM"},
                {"name": "carina-raw-ssd", "re": ["loop2"], "policy": "RAW"},
            ],
            "schedulerStrategy": strategy,
        }
    )


def make_pod(*claims):
    return {
        "metadata": {"name": "pod1", "namespace": "ns"},
        "spec": {"volumes": [{"name": c, "persistentVolumeClaim": {"claimName": c}} for c in claims]},
    }


def make_pvc(sc="sc", storage="3Gi", bound_to=None):
    pvc = {
        "spec": {"storageClassName": sc, "resources": {"requests": {"storage": storage}}},
        "status": {"phase": "Pending"},
    }
    if bound_to:
        pvc["spec"]["volumeName"] = bound_to
        pvc["status"]["phase"] = "Bound"
    return pvc


def make_sc(params, provisioner="carina.storage.io", name="sc"):
    return {"metadata": {"name": name}, "provisioner": provisioner, "parameters": params}


def make_nsr(allocatable):
    return {"metadata": {"name": "node1"}, "status": {"allocatable": allocatable}}


def make_lv(node, group, exclusive="true"):
    return {
        "metadata": {"annotations": {"carina.storage.io/exclusively-raw-disk": exclusive}},
        "spec": {"nodeName": node, "deviceGroup": group},
    }


def make_plugin(pvcs, scs, nsrs, pvs=None, lvs=None, strategy="spreadout", client=None):
    return LocalStorage(
        config=make_config(strategy),
        pvc_lister=FakeLister({f"ns/{k}": v for k, v in pvcs.items()}),
        sc_lister=FakeLister(scs),
        pv_lister=FakeLister(pvs or {}),
        lv_lister=FakeLister(lvs or {}),
        nsr_lister=FakeLister(nsrs),
        client=client or FakeClient(),
    )


@pytest.mark.parametrize(
    "value, expected",
    [("3Gi", 3 * GIB), ("100", 100), ("1k", 1000), ("1.5Gi", 3 * GIB // 2), ("100m", 1), ("1e3", 1000), (42, 42), (None, 0)],
)
def test_parse_quantity(value, expected):
    assert parse_quantity(value) == expected


def test_parse_quantity_rejects_garbage():
    with pytest.raises(ValueError):
        parse_quantity("3 gigs")


def test_minimum_value_minus_takes_smallest_fit():
    array = [3, 4, 5, 2, 5, 23, 1]
    index = minimum_value_minus(array, PvcRequest(exclusive=False, request=3 * GIB))
    assert index == 2
    assert array == [1, 2, 0, 4, 5, 5, 23]


def test_minimum_value_minus_no_fit():
    array = [3, 4, 5, 2, 5, 23, 1]
    index = minimum_value_minus(array, PvcRequest(exclusive=False, request=33 * GIB))
    assert index == -1
    assert array == [1, 2, 3, 4, 5, 5, 23]


def test_minimum_value_minus_exclusive_zeroes_disk():
    array = [10, 4]
    index = minimum_value_minus(array, PvcRequest(exclusive=True, request=2 * GIB))
    assert index == 0
    assert array == [0, 10]


def test_get_node_storage_resource_from_cache():
    nsr = make_nsr({"carina.storage.io/carina-vg-ssd": "10"})
    result = get_node_storage_resource(FakeClient(), FakeLister({"node1": nsr}), "node1")
    assert result["status"]["allocatable"] == {"carina.storage.io/carina-vg-ssd": "10"}


def test_get_node_storage_resource_falls_back_to_client():
    nsr = make_nsr({"carina.storage.io/carina-vg-ssd": "7"})
    client = FakeClient({"nodestorageresources": {"node1": nsr}})
    result = get_node_storage_resource(client, FakeLister(fail=True), "node1")
    assert result["status"]["allocatable"]["carina.storage.io/carina-vg-ssd"] == "7"


def test_get_node_storage_resource_client_error_propagates():
    with pytest.raises(KeyError):
        get_node_storage_resource(FakeClient({"nodestorageresources": {}}), FakeLister(fail=True), "node1")


def test_get_lv_exclusivity_disks_filters_by_node_and_annotation():
    lister = FakeLister(
        {
            "a": make_lv("node1", "carina-raw-ssd/sdb"),
            "b": make_lv("node2", "carina-raw-ssd/sdc"),
            "c": make_lv("node1", "carina-raw-ssd/sdd", exclusive="false"),
            "d": {"spec": {"nodeName": "node1", "deviceGroup": "carina-raw-ssd/sde"}},
        }
    )
    assert get_lv_exclusivity_disks(FakeClient(), lister, "node1") == ["carina-raw-ssd/sdb"]


def test_get_lv_exclusivity_disks_empty_cache():
    assert get_lv_exclusivity_disks(FakeClient(), FakeLister(), "node1") == []


def test_get_lv_exclusivity_disks_falls_back_to_client():
    client = FakeClient({"logicvolumes": {"a": make_lv("node1", "carina-raw-ssd/sdc")}})
    assert get_lv_exclusivity_disks(client, FakeLister(fail=True), "node1") == ["carina-raw-ssd/sdc"]


def lvm_plugin(allocatable="10", strategy="spreadout", storage="3Gi"):
    return make_plugin(
        pvcs={"data": make_pvc(storage=storage)},
        scs={"sc": make_sc({"carina.storage.io/disk-group-name": "carina-vg-ssd"})},
        nsrs={"node1": make_nsr({"carina.storage.io/carina-vg-ssd": allocatable})},
        strategy=strategy,
    )


def test_name():
    assert lvm_plugin().name() == "local-storage"
    assert lvm_plugin().score_extensions() is None


def test_filter_lvm_enough_capacity():
    status = lvm_plugin().filter(make_pod("data"), "node1")
    assert status.code is Code.SUCCESS
    assert status.is_success()


def test_filter_lvm_insufficient():
    status = lvm_plugin(allocatable="2").filter(make_pod("data"), "node1")
    assert status.code is Code.UNSCHEDULABLE_AND_UNRESOLVABLE
    assert status.message == "node storage resource insufficient"


def test_filter_without_claims_succeeds():
    assert lvm_plugin().filter(make_pod(), "node1").code is Code.SUCCESS


def test_filter_unknown_node_storage():
    status = lvm_plugin().filter(make_pod("data"), "node9")
    assert status.code is Code.UNSCHEDULABLE_AND_UNRESOLVABLE
    assert status.message.startswith("Failed to obtain node storages")


def test_filter_missing_claim_is_error():
    status = lvm_plugin().filter(make_pod("nothere"), "node1")
    assert status.code is Code.ERROR


def test_filter_other_provisioner_is_ignored():
    plugin = make_plugin(
        pvcs={"data": make_pvc()},
        scs={"sc": make_sc({}, provisioner="other.io")},
        nsrs={},
    )
    assert plugin.filter(make_pod("data"), "node1").code is Code.SUCCESS
    assert plugin.score(make_pod("data"), "node1")[0] == 5


def test_filter_no_device_group_is_error():
    plugin = make_plugin(pvcs={"data": make_pvc()}, scs={"sc": make_sc({})}, nsrs={})
    status = plugin.filter(make_pod("data"), "node1")
    assert status.code is Code.ERROR
    assert status.message == "not set deviceGroup in storageClass sc"


def test_filter_bad_cache_ratio_is_error():
    params = {
        "carina.storage.io/backend-disk-group-name": "carina-vg-hdd",
        "carina.storage.io/cache-disk-group-name": "carina-vg-ssd",
        "carina.storage.io/cache-disk-ratio": "100",
    }
    plugin = make_plugin(pvcs={"data": make_pvc()}, scs={"sc": make_sc(params)}, nsrs={})
    status = plugin.filter(make_pod("data"), "node1")
    assert status.code is Code.ERROR
    assert status.message == "carina.storage.io/cache-disk-ratio should be in 1-100"


def bound_plugin():
    pv = {"spec": {"csi": {"volumeAttributes": {"carina.storage.io/node": "node1"}}}}
    return make_plugin(
        pvcs={"data": make_pvc(bound_to="pv1")},
        scs={"sc": make_sc({"carina.storage.io/disk-group-name": "carina-vg-ssd"})},
        nsrs={},
        pvs={"pv1": pv},
    )


def test_filter_bound_claim_other_node():
    status = bound_plugin().filter(make_pod("data"), "node2")
    assert status.code is Code.UNSCHEDULABLE_AND_UNRESOLVABLE
    assert status.message == "pv node mismatch"


def test_score_bound_claim_same_node():
    score, status = bound_plugin().score(make_pod("data"), "node1")
    assert score == MAX_SCORE
    assert status.code is Code.SUCCESS


def test_score_spreadout():
    score, status = lvm_plugin(strategy="spreadout").score(make_pod("data"), "node1")
    assert (score, status.code) == (7, Code.SUCCESS)


def test_score_binpack():
    score, _ = lvm_plugin(strategy="binpack").score(make_pod("data"), "node1")
    assert score == 3


def test_score_without_claims():
    assert lvm_plugin().score(make_pod(), "node1") == (5, lvm_plugin().score(make_pod(), "node1")[1])
    assert lvm_plugin().score(make_pod(), "node1")[0] == 5


def test_score_unknown_node_storage():
    score, status = lvm_plugin().score(make_pod("data"), "node9")
    assert score == 0
    assert status.code is Code.UNSCHEDULABLE_AND_UNRESOLVABLE


def raw_plugin(lvs=None, storage="10Gi"):
    return make_plugin(
        pvcs={"data": make_pvc(storage=storage)},
        scs={
            "sc": make_sc(
                {
                    "carina.storage.io/disk-group-name": "carina-raw-ssd",
                    "carina.storage.io/exclusively-raw-disk": "true",
                }
            )
        },
        nsrs={
            "node1": make_nsr(
                {
                    "carina.storage.io/carina-raw-ssd/sdb": "5",
                    "carina.storage.io/carina-raw-ssd/sdc": "20",
                    "cpu": "4",
                }
            )
        },
        lvs=lvs,
    )


def test_filter_raw_fits_largest_disk():
    assert raw_plugin().filter(make_pod("data"), "node1").code is Code.SUCCESS


def test_filter_raw_skips_exclusively_used_disk():
    plugin = raw_plugin(lvs={"lv": make_lv("node1", "carina-raw-ssd/sdc")})
    status = plugin.filter(make_pod("data"), "node1")
    assert status.code is Code.UNSCHEDULABLE_AND_UNRESOLVABLE
    assert status.message == "node storage resource insufficient"


def test_score_raw_sums_matching_disks():
    score, status = raw_plugin().score(make_pod("data"), "node1")
    assert (score, status.code) == (6, Code.SUCCESS)