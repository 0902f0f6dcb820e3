"""Track user agent strings and flag hosts using rarely seen signatures."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from rita.data import UniqueIP, UniqueIPSet
from rita.workers import Update, WorkerPool, upsert_update, worker_count

_default_log = logging.getLogger(__name__)

_MAX_ORIG_IPS = 10
_MAX_REQUESTS = 10
# A signature used by fewer than this many hosts counts as rare.
_RARE_HOST_LIMIT = 5

# Index keys are limited to 1024 bytes; overly long names are cut back.
_MAX_KEY_BYTES = 1024
_TRUNCATED_KEY_BYTES = 800


def _ip_document(ip: UniqueIP) -> dict:
    return {"ip": ip.ip, "network_uuid": ip.network_uuid, "network_name": ip.network_name}


def _ip_from_document(doc: dict) -> UniqueIP:
    return UniqueIP(doc.get("ip", ""), doc.get("network_uuid"), doc.get("network_name", ""))


def _truncate_key(name: str) -> str:
    raw = name.encode("utf-8")
    if len(raw) > _MAX_KEY_BYTES:
        return raw[:_TRUNCATED_KEY_BYTES].decode("utf-8", errors="ignore")
    return name


@dataclass
class UserAgentInput:
    """A user agent (or JA3 hash) with the hosts that used it and where they went."""

    name: str
    seen: int = 0
    orig_ips: UniqueIPSet = field(default_factory=UniqueIPSet)
    requests: list[str] = field(default_factory=list)
    ja3: bool = False


@dataclass(frozen=True)
class UserAgentResult:
    """A user agent and how many times it was seen."""

    user_agent: str
    times_used: int = 0


def useragent_update(chunk: int, table: str, datum: UserAgentInput) -> Update:
    """Upsert appending this chunk's sightings to the user agent's record."""
    orig_ips = list(datum.orig_ips)[:_MAX_ORIG_IPS]
    requests = list(datum.requests)[:_MAX_REQUESTS]
    query = {
        "$push": {
            "dat": {
                "seen": datum.seen,
                "orig_ips": [_ip_document(ip) for ip in orig_ips],
                "hosts": requests,
                "cid": chunk,
            }
        },
        "$set": {"cid": chunk},
        "$setOnInsert": {"ja3": datum.ja3},
    }
    return Update({"user_agent": datum.name}, query, table)


def rare_signature_pipeline(name: str, max_left: int) -> list[dict]:
    """Aggregation returning the distinct hosts of a signature used by at most max_left hosts."""
    return [
        {"$match": {"user_agent": name}},
        # network_name is dropped before comparing UniqueIPs
        {"$project": {"dat.orig_ips.network_name": 0}},
        {"$project": {"ips": "$dat.orig_ips", "user_agent": 1}},
        {"$unwind": "$ips"},
        # ips is a list of lists, so it is unwound twice
        {"$unwind": "$ips"},
        {"$group": {"_id": "$user_agent", "ips": {"$addToSet": "$ips"}}},
        {
            "$project": {
                "count": {"$size": {"$ifNull": ["$ips", []]}},
                "ips": "$ips",
            }
        },
        {"$match": {"count": {"$lte": max_left}}},
    ]


def host_query(chunk: int, useragent: str, ip: UniqueIP, new_flag: bool) -> Update:
    """Upsert recording a rare signature on a host's record."""
    selector = ip.bson_key()
    if new_flag:
        query = {"$push": {"dat": {"rsig": useragent, "rsigc": 1, "cid": chunk}}}
    else:
        # an existing entry is moved to the current chunk rather than duplicated
        query = {"$set": {"dat.$.rsigc": 1, "dat.$.cid": chunk}}
        selector["dat.rsig"] = useragent
    return Update(selector, query)


def results_pipeline(sort_direction: int, limit: int, no_limit: bool) -> list[dict]:
    """Aggregation summing sightings per user agent, sorted by sort_direction."""
    pipeline = [
        {"$project": {"user_agent": 1, "seen": "$dat.seen"}},
        {"$unwind": "$seen"},
        {"$group": {"_id": "$user_agent", "seen": {"$sum": "$seen"}}},
        {"$project": {"_id": 0, "user_agent": "$_id", "seen": 1}},
        {"$sort": {"seen": sort_direction}},
    ]
    if not no_limit:
        pipeline.append({"$limit": limit})
    return pipeline


class UserAgentRepository:
    """Reads and writes the user agent collection and rare signature host data."""

    def __init__(self, db, table: str, host_table: str, chunk: int, log: logging.Logger | None = None) -> None:
        self._db = db
        self._table = table
        self._host_table = host_table
        self._chunk = chunk
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
        collection.create_index([("user_agent", ASCENDING)], unique=True)
        collection.create_index([("dat.seen", ASCENDING)])
        collection.create_index([("dat.orig_ips.ip", ASCENDING), ("dat.orig_ips.network_uuid", ASCENDING)])

    def upsert(self, useragent_map: dict[str, UserAgentInput]) -> None:
        """Analyze every user agent and write the results."""
        writer = WorkerPool(
            lambda update: upsert_update(self._db[update.collection], update, self._log, "useragent")
        )
        analyzer = WorkerPool(lambda datum: self._analyze(datum, writer.collect), on_close=writer.close)
        for _ in range(worker_count()):
            analyzer.start()
            writer.start()

        total = len(useragent_map)
        done = 0
        try:
            for entry in useragent_map.values():
                analyzer.collect(replace(entry, name=_truncate_key(entry.name)))
                done += 1
        finally:
            print(f"\t[-] UserAgent Analysis:        {done} / {total}")
            analyzer.close()

    def results(self, sort_direction: int, limit: int, no_limit: bool) -> list[UserAgentResult]:
        """User agents with how often each was seen."""
        docs = self._db[self._table].aggregate(
            results_pipeline(sort_direction, limit, no_limit), allowDiskUse=True
        )
        return [
            UserAgentResult(user_agent=doc.get("user_agent", ""), times_used=int(doc.get("seen", 0)))
            for doc in docs
        ]

    def _analyze(self, datum: UserAgentInput, emit) -> None:
        emit(useragent_update(self._chunk, self._table, datum))

        host_count = min(len(datum.orig_ips), _MAX_ORIG_IPS)
        if host_count >= _RARE_HOST_LIMIT:
            return
        for ip in self._rare_signature_ips(datum.name, _RARE_HOST_LIMIT - host_count):
            new_flag = not self._has_current_entry(ip, datum.name)
            update = host_query(self._chunk, datum.name, ip, new_flag)
            update.collection = self._host_table
            emit(update)

    def _rare_signature_ips(self, name: str, max_left: int) -> list[UniqueIP]:
        try:
            docs = list(self._db[self._table].aggregate(rare_signature_pipeline(name, max_left), allowDiskUse=True))
        except PyMongoError as exc:
            self._log.error("[useragent] rare signature lookup failed: %s", exc)
            return []
        if not docs:
            return []
        return [_ip_from_document(doc) for doc in docs[0].get("ips") or []]

    def _has_current_entry(self, ip: UniqueIP, name: str) -> bool:
        selector = ip.bson_key()
        selector["dat.rsig"] = name
        try:
            doc = self._db[self._host_table].find_one(selector)
        except PyMongoError as exc:
            self._log.error("[useragent] host lookup failed: %s", exc)
            return False
        return doc is not None and doc.get("cid", 0) == self._chunk