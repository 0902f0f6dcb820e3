import logging
import threading
from types import SimpleNamespace

from pymongo.errors import OperationFailure

from rita.blacklist import (
    BlacklistRepository,
    ConnectionPeer,
    append_blacklisted_dst_query,
    append_blacklisted_src_query,
    bl_destination_pipeline,
    bl_source_pipeline,
)
from rita.data import UniqueIP
from rita.netutil import (
    PUBLIC_NETWORK_NAME,
    PUBLIC_NETWORK_UUID,
    UNKNOWN_PRIVATE_NETWORK_NAME,
    UNKNOWN_PRIVATE_NETWORK_UUID,
)

BAD_IP = UniqueIP("203.0.113.5", PUBLIC_NETWORK_UUID, PUBLIC_NETWORK_NAME)
LOCAL_A = UniqueIP("10.0.0.1", UNKNOWN_PRIVATE_NETWORK_UUID, UNKNOWN_PRIVATE_NETWORK_NAME)
LOCAL_B = UniqueIP("10.0.0.2", UNKNOWN_PRIVATE_NETWORK_UUID, UNKNOWN_PRIVATE_NETWORK_NAME)


class FakeCollection:
    def __init__(self, docs=(), existing=(), aggregate_results=None, fail_aggregate=False):
        self.docs = list(docs)
        self.existing = list(existing)
        self.aggregate_results = aggregate_results or {}
        self.fail_aggregate = fail_aggregate
        self.updates = []
        self._lock = threading.Lock()

    def find(self, filt):
        return [d for d in self.docs if all(d.get(k) == v for k, v in filt.items())]

    def find_one(self, selector):
        return selector if selector in self.existing else None

    def aggregate(self, pipeline, allowDiskUse=False):
        if self.fail_aggregate:
            raise OperationFailure("boom")
        side = "dst" if "dst" in pipeline[0]["$match"] else "src"
        return list(self.aggregate_results.get(side, []))

    def update_one(self, selector, query, upsert=False):
        with self._lock:
            self.updates.append((selector, query, upsert))
        return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)


def _peer_doc(ip, conns, tbytes):
    return {"_id": {"ip": ip.ip, "network_uuid": ip.network_uuid}, "bl_conn_count": conns, "bl_total_bytes": tbytes}


def _host_doc(ip):
    return {"ip": ip.ip, "network_uuid": ip.network_uuid, "network_name": ip.network_name, "blacklisted": True}


def test_dst_query_new_pushes_record():
    peer = ConnectionPeer(LOCAL_A, connections=3, total_bytes=300)
    update = append_blacklisted_dst_query(7, BAD_IP, peer, True)
    assert update.selector == LOCAL_A.bson_key()
    dat = update.query["$push"]["dat"]
    assert dat["bl_out_count"] == 1
    assert dat["bl_conn_count"] == 3
    assert dat["bl_total_bytes"] == 300
    assert dat["cid"] == 7
    assert dat["bl"]["ip"] == BAD_IP.ip
    assert "bl_in_count" not in dat


def test_dst_query_existing_sets_positional_fields():
    peer = ConnectionPeer(LOCAL_A, connections=3, total_bytes=300)
    update = append_blacklisted_dst_query(7, BAD_IP, peer, False)
    assert update.selector["dat.bl"] == BAD_IP.bson_key()
    assert update.selector["ip"] == LOCAL_A.ip
    assert update.query["$set"]["dat.$.bl_out_count"] == 1
    assert update.query["$set"]["dat.$.cid"] == 7
    assert "$push" not in update.query


def test_src_query_uses_in_count():
    peer = ConnectionPeer(LOCAL_B, connections=4, total_bytes=400)
    new = append_blacklisted_src_query(2, BAD_IP, peer, True)
    assert new.query["$push"]["dat"]["bl_in_count"] == 1
    existing = append_blacklisted_src_query(2, BAD_IP, peer, False)
    assert existing.query["$set"]["dat.$.bl_in_count"] == 1
    assert existing.query["$set"]["dat.$.bl_total_bytes"] == 400


def test_pipelines_match_opposite_sides():
    dst = bl_destination_pipeline(BAD_IP)
    src = bl_source_pipeline(BAD_IP)
    assert dst[0]["$match"] == {"dst": BAD_IP.ip, "dst_network_uuid": BAD_IP.network_uuid}
    assert dst[2]["$group"]["_id"] == {"ip": "$src", "network_uuid": "$src_network_uuid"}
    assert src[0]["$match"] == {"src": BAD_IP.ip, "src_network_uuid": BAD_IP.network_uuid}
    assert src[2]["$group"]["_id"] == {"ip": "$dst", "network_uuid": "$dst_network_uuid"}
    assert dst[1] == {"$unwind": "$dat"}


def _db(hosts, uconn):
    return {"host": hosts, "uconn": uconn}


def test_upsert_writes_new_peer_records():
    hosts = FakeCollection(docs=[_host_doc(BAD_IP)])
    uconn = FakeCollection(
        aggregate_results={"dst": [_peer_doc(LOCAL_A, 3, 300)], "src": [_peer_doc(LOCAL_B, 4, 400)]}
    )
    BlacklistRepository(_db(hosts, uconn), "host", "uconn", 5).upsert()
    by_ip = {sel["ip"]: query for sel, query, upsert in hosts.updates}
    assert set(by_ip) == {LOCAL_A.ip, LOCAL_B.ip}
    assert by_ip[LOCAL_A.ip]["$push"]["dat"]["bl_out_count"] == 1
    assert by_ip[LOCAL_A.ip]["$push"]["dat"]["bl_conn_count"] == 3
    assert by_ip[LOCAL_B.ip]["$push"]["dat"]["bl_in_count"] == 1
    assert by_ip[LOCAL_B.ip]["$push"]["dat"]["bl_total_bytes"] == 400
    assert all(upsert for _, _, upsert in hosts.updates)


def test_upsert_updates_existing_peer_record():
    existing_selector = LOCAL_A.bson_key()
    existing_selector["dat.bl"] = BAD_IP.bson_key()
    hosts = FakeCollection(docs=[_host_doc(BAD_IP)], existing=[existing_selector])
    uconn = FakeCollection(aggregate_results={"dst": [_peer_doc(LOCAL_A, 3, 300)]})
    BlacklistRepository(_db(hosts, uconn), "host", "uconn", 5).upsert()
    assert len(hosts.updates) == 1
    selector, query, _ = hosts.updates[0]
    assert selector == existing_selector
    assert query["$set"]["dat.$.bl_conn_count"] == 3


def test_upsert_logs_failed_peer_lookup(caplog):
    hosts = FakeCollection(docs=[_host_doc(BAD_IP)])
    uconn = FakeCollection(fail_aggregate=True)
    log = logging.getLogger("test.blacklist")
    with caplog.at_level(logging.ERROR, logger="test.blacklist"):
        BlacklistRepository(_db(hosts, uconn), "host", "uconn", 5, log).upsert()
    assert hosts.updates == []
    assert any("peer lookup failed" in record.getMessage() for record in caplog.records)