import threading
from types import SimpleNamespace

from rita.data import UniqueIP, UniqueIPSet, UniqueSrcIP
from rita.hostname import FqdnInput, HostnameInput, HostnameRepository, hostname_update
from rita.netutil import UNKNOWN_PRIVATE_NETWORK_NAME, UNKNOWN_PRIVATE_NETWORK_UUID


class FakeCollection:
    def __init__(self, docs=()):
        self.docs = list(docs)
        self.updates = []
        self.indexes = []
        self._lock = threading.Lock()

    def count_documents(self, selector):
        return sum(1 for doc in self.docs if all(doc.get(k) == v for k, v in selector.items()))

    def update_one(self, selector, query, upsert=False):
        with self._lock:
            self.updates.append((selector, query, upsert))
        return SimpleNamespace(modified_count=0, upserted_id=1, matched_count=0)

    def create_index(self, keys, unique=False):
        self.indexes.append((keys, unique))


class FakeDB:
    def __init__(self, collections=None):
        self.collections = dict(collections or {})
        self.created = []

    def __getitem__(self, name):
        return self.collections[name]

    def list_collection_names(self):
        return list(self.collections)

    def create_collection(self, name):
        self.created.append(name)
        self.collections[name] = FakeCollection()
        return self.collections[name]


def ip_factory(ip):
    return UniqueIP(ip, UNKNOWN_PRIVATE_NETWORK_UUID, UNKNOWN_PRIVATE_NETWORK_NAME)


def ip_doc(ip):
    return {"ip": ip, "network_uuid": UNKNOWN_PRIVATE_NETWORK_UUID, "network_name": UNKNOWN_PRIVATE_NETWORK_NAME}


TEST_HOSTNAME = {
    "a.b.activecountermeasures.com": HostnameInput(
        "a.b.activecountermeasures.com",
        client_ips=UniqueIPSet([ip_factory("192.168.1.1")]),
        resolved_ips=UniqueIPSet([ip_factory("127.0.0.1"), ip_factory("127.0.0.2")]),
    ),
    "x.a.b.activecountermeasures.com": HostnameInput(
        "x.a.b.activecountermeasures.com",
        client_ips=UniqueIPSet([ip_factory("192.168.1.1")]),
        resolved_ips=UniqueIPSet([ip_factory("127.0.0.1"), ip_factory("127.0.0.2")]),
    ),
    "activecountermeasures.com": HostnameInput(
        "activecountermeasures.com",
        client_ips=UniqueIPSet([ip_factory("192.168.1.1")]),
        resolved_ips=UniqueIPSet(),
    ),
    "google.com": HostnameInput(
        "google.com",
        client_ips=UniqueIPSet([ip_factory("192.168.1.1"), ip_factory("192.168.1.2")]),
        resolved_ips=UniqueIPSet([ip_factory("127.0.0.1"), ip_factory("127.0.0.2"), ip_factory("0.0.0.0")]),
    ),
}


def make_dbs(blacklisted=()):
    db = FakeDB({"hostnames": FakeCollection()})
    bl_db = FakeDB({"hostname": FakeCollection([{"index": h} for h in blacklisted])})
    return db, bl_db


def test_hostname_update_not_blacklisted():
    datum = TEST_HOSTNAME["activecountermeasures.com"]
    update = hostname_update(2, datum, False)
    assert update.selector == {"host": "activecountermeasures.com"}
    assert update.query == {
        "$push": {"dat": {"ips": [], "src_ips": [ip_doc("192.168.1.1")], "cid": 2}},
        "$set": {"cid": 2},
    }


def test_hostname_update_blacklisted():
    update = hostname_update(1, TEST_HOSTNAME["google.com"], True)
    assert update.query["$set"] == {"blacklisted": True, "cid": 1}
    assert update.query["$push"]["dat"]["ips"] == [ip_doc("127.0.0.1"), ip_doc("127.0.0.2"), ip_doc("0.0.0.0")]


def test_upsert_writes_every_hostname():
    db, bl_db = make_dbs(blacklisted=["google.com"])
    HostnameRepository(db, bl_db, "hostnames", 0).upsert(TEST_HOSTNAME)
    updates = {sel["host"]: query for sel, query, _ in db["hostnames"].updates}
    assert sorted(updates) == sorted(TEST_HOSTNAME)
    assert updates["google.com"]["$set"] == {"blacklisted": True, "cid": 0}
    assert updates["activecountermeasures.com"]["$set"] == {"cid": 0}


def test_upsert_skips_empty_and_reverse_names():
    db, bl_db = make_dbs()
    inputs = {
        "": HostnameInput(""),
        "1.0.0.127.in-addr.arpa": HostnameInput("1.0.0.127.in-addr.arpa"),
        "example.com": HostnameInput("example.com"),
    }
    HostnameRepository(db, bl_db, "hostnames", 0).upsert(inputs)
    assert [sel for sel, _, _ in db["hostnames"].updates] == [{"host": "example.com"}]


def test_upsert_truncates_long_hostname():
    db, bl_db = make_dbs()
    long_name = "a" * 1100
    HostnameRepository(db, bl_db, "hostnames", 0).upsert({long_name: HostnameInput(long_name)})
    (selector, _, _), = db["hostnames"].updates
    assert selector == {"host": "a" * 800}


def test_create_indexes_new_collection():
    db = FakeDB()
    HostnameRepository(db, FakeDB(), "hostnames", 0).create_indexes()
    assert db.created == ["hostnames"]
    assert db["hostnames"].indexes == [
        ([("host", 1)], True),
        ([("dat.ips.ip", 1), ("dat.ips.network_uuid", 1)], False),
    ]


def test_create_indexes_existing_collection():
    db = FakeDB({"hostnames": FakeCollection()})
    HostnameRepository(db, FakeDB(), "hostnames", 0).create_indexes()
    assert db.created == []


def test_fqdn_input_defaults():
    src = UniqueSrcIP("10.0.0.1", UNKNOWN_PRIVATE_NETWORK_UUID, UNKNOWN_PRIVATE_NETWORK_NAME)
    datum = FqdnInput("example.com", src)
    assert datum.connection_count == 0
    assert len(datum.resolved_ips) == 0
    assert datum.src.unpair() == ip_factory("10.0.0.1")