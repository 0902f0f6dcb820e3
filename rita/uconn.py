"""Aggregate unique connections between host pairs and track long connections."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from rita.data import UniqueIP, UniqueIPPair
from rita.workers import Update, WorkerPool, upsert_update, worker_count

_default_log = logging.getLogger(__name__)

_MAX_TUPLES = 5


def _ip_document(ip: UniqueIP) -> dict:
    return {"ip": ip.ip, "network_uuid": ip.network_uuid, "network_name": ip.network_name}


@dataclass
class UconnInput:
    """Aggregated connection information between two hosts."""

    hosts: UniqueIPPair
    connection_count: int = 0
    is_local_src: bool = False
    is_local_dst: bool = False
    total_bytes: int = 0
    max_duration: float = 0.0
    total_duration: float = 0.0
    ts_list: list[int] = field(default_factory=list)
    orig_bytes_list: list[int] = field(default_factory=list)
    tuples: list[str] = field(default_factory=list)
    invalid_cert_flag: bool = False
    upps_flag: bool = False


@dataclass
class LongConnResult:
    """A host pair and the longest connection seen between them."""

    hosts: UniqueIPPair
    max_duration: float = 0.0
    tuples: list[str] = field(default_factory=list)


def uconn_update(chunk: int, conn_limit: int, datum: UconnInput) -> Update:
    """Build the upsert appending this chunk's connection data to the pair's record.

    Pairs with at least conn_limit connections are flagged as strobes and
    their byte and timestamp lists are not stored.
    """
    tuples = list(datum.tuples)[:_MAX_TUPLES]
    set_fields = {
        "cid": chunk,
        "src_network_name": datum.hosts.src_network_name,
        "dst_network_name": datum.hosts.dst_network_name,
    }
    if datum.connection_count >= conn_limit:
        set_fields = {"strobe": True, **set_fields}
        bytes_list: list[int] = []
        ts_list: list[int] = []
    else:
        bytes_list = list(datum.orig_bytes_list)
        ts_list = list(datum.ts_list)

    query = {
        "$set": set_fields,
        "$push": {
            "dat": {
                "count": datum.connection_count,
                "bytes": bytes_list,
                "ts": ts_list,
                "tuples": tuples,
                "icerts": datum.invalid_cert_flag,
                "maxdur": datum.max_duration,
                "tbytes": datum.total_bytes,
                "tdur": datum.total_duration,
                "cid": chunk,
            }
        },
    }
    return Update(datum.hosts.bson_key(), query)


def long_conn_pipeline(thresh: int, limit: int, no_limit: bool) -> list[dict]:
    """Aggregation finding pairs with a connection longer than thresh seconds."""
    pair_fields = (
        "src",
        "src_network_uuid",
        "src_network_name",
        "dst",
        "dst_network_uuid",
        "dst_network_name",
    )
    group: dict = {"_id": "$_id", "maxdur": {"$max": "$maxdur"}}
    group.update({name: {"$first": f"${name}"} for name in pair_fields})
    group["tuples"] = {"$addToSet": "$tuples"}

    pipeline = [
        {"$match": {"dat.maxdur": {"$gt": thresh}}},
        {
            "$project": {
                **{name: 1 for name in pair_fields},
                "maxdur": "$dat.maxdur",
                "tuples": {"$ifNull": ["$dat.tuples", []]},
            }
        },
        {"$unwind": "$maxdur"},
        {"$unwind": "$tuples"},
        # tuples is a list of lists, so it is unwound twice
        {"$unwind": "$tuples"},
        {"$group": group},
        {
            "$project": {
                "maxdur": 1,
                **{name: 1 for name in pair_fields},
                "tuples": {"$slice": ["$tuples", _MAX_TUPLES]},
            }
        },
        {"$sort": {"maxdur": -1}},
    ]
    if not no_limit:
        pipeline.append({"$limit": limit})
    return pipeline


def _long_conn_from_document(doc: dict) -> LongConnResult:
    hosts = UniqueIPPair(
        doc.get("src", ""),
        doc.get("src_network_uuid"),
        doc.get("src_network_name", ""),
        doc.get("dst", ""),
        doc.get("dst_network_uuid"),
        doc.get("dst_network_name", ""),
    )
    return LongConnResult(
        hosts=hosts,
        max_duration=float(doc.get("maxdur", 0.0)),
        tuples=list(doc.get("tuples") or []),
    )


class UconnRepository:
    """Reads and writes the unique connections collection."""

    def __init__(
        self,
        db,
        table: str,
        host_table: str,
        chunk: int,
        conn_limit: int,
        log: logging.Logger | None = None,
    ) -> None:
        self._db = db
        self._table = table
        self._host_table = host_table
        self._chunk = chunk
        self._conn_limit = conn_limit
        self._log = log or _default_log

    def create_indexes(self) -> None:
        """Create the collection and its indexes unless it already exists."""
        try:
            names = self._db.list_collection_names()
        except PyMongoError:
            names = []
        if self._table in names:
            return
        collection = self._db.create_collection(self._table)
        collection.create_index(
            [
                ("src", ASCENDING),
                ("dst", ASCENDING),
                ("src_network_uuid", ASCENDING),
                ("dst_network_uuid", ASCENDING),
            ],
            unique=True,
        )
        collection.create_index([("src", ASCENDING), ("src_network_uuid", ASCENDING)])
        collection.create_index([("dst", ASCENDING), ("dst_network_uuid", ASCENDING)])
        collection.create_index([("dat.count", ASCENDING)])

    def upsert(self, uconn_map: dict[str, UconnInput]) -> None:
        """Analyze every connection pair and write the results."""
        writer = WorkerPool(self._write)
        analyzer = WorkerPool(lambda datum: self._analyze(datum, writer.collect), on_close=writer.close)
        for _ in range(worker_count()):
            analyzer.start()
            writer.start()

        total = len(uconn_map)
        done = 0
        try:
            for entry in uconn_map.values():
                analyzer.collect(entry)
                done += 1
        finally:
            print(f"\t[-] Uconn Analysis:        {done} / {total}")
            analyzer.close()

    def long_conn_results(self, thresh: int, limit: int, no_limit: bool) -> list[LongConnResult]:
        """Pairs with connections longer than thresh seconds, longest first."""
        docs = self._db[self._table].aggregate(long_conn_pipeline(thresh, limit, no_limit), allowDiskUse=True)
        return [_long_conn_from_document(doc) for doc in docs]

    def _analyze(self, datum: UconnInput, emit) -> None:
        uconn = uconn_update(self._chunk, self._conn_limit, datum)
        source = datum.hosts.source.unpair()
        destination = datum.hosts.destination.unpair()
        host_update = None
        if datum.is_local_src:
            host_update = self._host_max_dur_query(datum.max_duration, source, destination)
        elif datum.is_local_dst:
            host_update = self._host_max_dur_query(datum.max_duration, destination, source)
        emit((uconn, host_update))

    def _write(self, item: tuple[Update, Update | None]) -> None:
        uconn, host_update = item
        upsert_update(self._db[self._table], uconn, self._log, "uconns")
        if host_update is not None:
            upsert_update(self._db[self._host_table], host_update, self._log, "beacons", require_matched=True)

    def _exists(self, selector: dict) -> bool:
        try:
            return self._db[self._host_table].find_one(selector) is not None
        except PyMongoError as exc:
            self._log.error("[uconns] host lookup failed: %s", exc)
            return False

    def _host_max_dur_query(self, max_dur: float, local_ip: UniqueIP, external_ip: UniqueIP) -> Update | None:
        """Update for the local host's max duration record, or None if nothing changes."""
        exact = local_ip.bson_key()
        exact["dat"] = {
            "$elemMatch": {
                "mdip": external_ip.bson_key(),
                "max_duration": {"$lte": max_dur},
            }
        }
        if self._exists(exact):
            query = {"$set": {"dat.$.cid": self._chunk, "dat.$.max_duration": max_dur}}
            return Update(exact, query)

        lower = local_ip.bson_key()
        lower["dat"] = {"$elemMatch": {"cid": self._chunk, "max_duration": {"$lte": max_dur}}}
        upper = local_ip.bson_key()
        upper["dat"] = {"$elemMatch": {"cid": self._chunk, "max_duration": {"$gte": max_dur}}}

        if self._exists(lower):
            query = {
                "$set": {
                    "dat.$.max_duration": max_dur,
                    "dat.$.mdip": _ip_document(external_ip),
                    "dat.$.cid": self._chunk,
                }
            }
            return Update(lower, query)

        if not self._exists(upper):
            query = {
                "$push": {
                    "dat": {
                        "max_duration": max_dur,
                        "mdip": _ip_document(external_ip),
                        "cid": self._chunk,
                    }
                }
            }
            return Update(local_ip.bson_key(), query)

        return None