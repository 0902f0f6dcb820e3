"""Maintain per-host statistics in the hosts collection."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from rita.data import UniqueIP
from rita.workers import Update, WorkerPool, upsert_update, worker_count

_default_log = logging.getLogger(__name__)


@dataclass
class HostInput:
    """Aggregated data about one host seen during an import."""

    host: UniqueIP
    is_local: bool = False
    count_src: int = 0
    count_dst: int = 0
    connection_count: int = 0
    total_bytes: int = 0
    max_duration: float = 0.0
    total_duration: float = 0.0
    dns_query_count: dict[str, int] = field(default_factory=dict)
    untrusted_app_conn_count: int = 0
    max_ts: int = 0
    min_ts: int = 0
    ip4: bool = False
    ip4_bin: int = 0


@dataclass(frozen=True)
class ExplodedDNS:
    """A domain and how many times it was queried by a host."""

    query: str = ""
    count: int = 0


def build_exploded_dns_array(dns_query_counts: dict[str, int]) -> list[ExplodedDNS]:
    """Count, for every parent domain, how many queried names fall under it.

    The last label of each name is never counted on its own.
    """
    counts: Counter[str] = Counter()
    for domain in dns_query_counts:
        labels = domain.split(".")
        last = len(labels) - 1
        for depth in range(1, last + 1):
            counts[".".join(labels[last - depth:])] += 1
    return [ExplodedDNS(query, count) for query, count in counts.items()]


def max_dns_query_count_query(host: UniqueIP) -> list[dict]:
    """Aggregation finding the host's most frequently queried domain."""
    return [
        {"$match": {"ip": host.ip, "network_uuid": host.network_uuid}},
        {"$unwind": "$dat"},
        {"$unwind": "$dat.exploded_dns"},
        {"$project": {"exploded_dns": "$dat.exploded_dns"}},
        {
            "$group": {
                "_id": "$exploded_dns.query",
                "query": {"$first": "$exploded_dns.query"},
                "count": {"$sum": "$exploded_dns.count"},
            }
        },
        {"$project": {"_id": 0, "query": 1, "count": 1}},
        {"$sort": {"count": -1}},
        {"$limit": 1},
    ]


def standard_query(
    chunk: int,
    ip: UniqueIP,
    local: bool,
    ip4: bool,
    ip4bin: int,
    max_dns_query_count: ExplodedDNS,
    untrusted_acc: int,
    count_src: int,
    count_dst: int,
    blacklisted: bool,
    new_flag: bool,
) -> Update:
    """Build the upsert that records this chunk's statistics for a host."""
    query: dict = {
        "$set": {
            "blacklisted": blacklisted,
            "cid": chunk,
            "local": local,
            "ipv4": ip4,
            "ipv4_binary": ip4bin,
            "network_name": ip.network_name,
        }
    }
    max_dns = asdict(max_dns_query_count)
    selector = ip.bson_key()
    if new_flag:
        query["$push"] = {
            "dat": {
                "$each": [
                    {
                        "count_src": count_src,
                        "count_dst": count_dst,
                        "upps_count": untrusted_acc,
                        "cid": chunk,
                    },
                    {"max_dns": max_dns, "cid": chunk},
                ]
            }
        }
    else:
        query["$inc"] = {
            "dat.$.count_src": count_src,
            "dat.$.count_dst": count_dst,
            "dat.$.upps_count": untrusted_acc,
        }
        query["$push"] = {"dat": {"max_dns": max_dns, "cid": chunk}}
        selector["dat.cid"] = chunk
    return Update(selector, query)


class HostRepository:
    """Writes host statistics into the hosts collection."""

    def __init__(self, db, blacklist_db, table: str, chunk: int, log: logging.Logger | None = None) -> None:
        self._db = db
        self._blacklist_db = blacklist_db
        self._table = table
        self._chunk = chunk
        self._log = log or _default_log

    def create_indexes(self) -> None:
        """Ensure the hosts collection has its indexes."""
        collection = self._db[self._table]
        collection.create_index([("ip", ASCENDING)])
        collection.create_index([("ip", ASCENDING), ("network_uuid", ASCENDING)], unique=True)
        collection.create_index([("local", ASCENDING)])
        collection.create_index([("ipv4_binary", ASCENDING)])

    def upsert(self, host_map: dict[str, HostInput]) -> None:
        """Analyze every host and write the results."""
        target = self._db[self._table]
        writer = WorkerPool(lambda update: upsert_update(target, update, self._log, "host"))
        analyzer = WorkerPool(lambda datum: self._analyze(datum, writer.collect), on_close=writer.close)
        for _ in range(worker_count()):
            analyzer.start()
            writer.start()

        total = len(host_map)
        done = 0
        try:
            for entry in host_map.values():
                analyzer.collect(entry)
                done += 1
        finally:
            print(f"\t[-] Host Analysis:        {done} / {total}")
            analyzer.close()

    def _analyze(self, datum: HostInput, emit) -> None:
        blacklisted = self._is_blacklisted(datum.host)
        if not datum.ip4:
            return

        new_flag = self._should_insert_new_record(datum.host)
        max_dns = ExplodedDNS()
        if datum.dns_query_count:
            entries = build_exploded_dns_array(datum.dns_query_count)
            self._write_exploded_dns_entries(datum.host, entries, new_flag)
            max_dns = self._max_dns_query(datum.host)

        emit(
            standard_query(
                self._chunk,
                datum.host,
                datum.is_local,
                datum.ip4,
                datum.ip4_bin,
                max_dns,
                datum.untrusted_app_conn_count,
                datum.count_src,
                datum.count_dst,
                blacklisted,
                new_flag,
            )
        )

    def _is_blacklisted(self, host: UniqueIP) -> bool:
        try:
            return self._blacklist_db["ip"].count_documents({"index": host.ip}) > 0
        except PyMongoError as exc:
            self._log.error("[host] blacklist lookup failed: %s", exc)
            return False

    def _should_insert_new_record(self, host: UniqueIP) -> bool:
        try:
            doc = self._db[self._table].find_one(host.bson_key())
        except PyMongoError as exc:
            self._log.error("[host] host lookup failed: %s", exc)
            doc = None
        return doc is None or doc.get("cid", 0) != self._chunk

    def _write_exploded_dns_entries(self, host: UniqueIP, entries: list[ExplodedDNS], new_flag: bool) -> None:
        selector = host.bson_key()
        if not new_flag:
            selector["dat.cid"] = self._chunk
        query = {
            "$push": {
                "dat": {
                    "exploded_dns": [asdict(entry) for entry in entries],
                    "cid": self._chunk,
                }
            }
        }
        upsert_update(self._db[self._table], Update(selector, query), self._log, "host")

    def _max_dns_query(self, host: UniqueIP) -> ExplodedDNS:
        pipeline = max_dns_query_count_query(host)
        try:
            docs = list(self._db[self._table].aggregate(pipeline, allowDiskUse=True))
        except PyMongoError as exc:
            self._log.error("[host] max dns query failed: %s (pipeline=%r)", exc, pipeline)
            return ExplodedDNS()
        if not docs:
            self._log.error("[host] max dns query returned nothing (pipeline=%r)", pipeline)
            return ExplodedDNS()
        doc = docs[0]
        return ExplodedDNS(doc.get("query", ""), int(doc.get("count", 0)))