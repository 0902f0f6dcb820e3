"""Count subdomains and lookups for every level of each queried domain."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from rita.workers import Update, WorkerPool, upsert_update, worker_count

_default_log = logging.getLogger(__name__)

# Index keys are limited to 1024 bytes; overly long names are cut back.
_MAX_KEY_BYTES = 1024
_TRUNCATED_KEY_BYTES = 800


@dataclass(frozen=True)
class ExplodedDNSResult:
    """A domain, how many subdomains it has and how often it was looked up."""

    domain: str
    subdomain_count: int = 0
    visited: int = 0


def _truncate_key(name: str) -> str:
    raw = name.encode("utf-8")
    if len(raw) > _MAX_KEY_BYTES:
        return raw[:_TRUNCATED_KEY_BYTES].decode("utf-8", errors="ignore")
    return name


def explode_domain(name: str) -> list[str]:
    """Return every parent domain of the name, shortest first.

    The last label is never counted on its own since it is (part of) the TLD.
    Stops at an empty entry or at in-addr.arpa.
    """
    labels = name.split(".")
    last = len(labels) - 1
    entries = []
    for depth in range(1, last + 1):
        entry = ".".join(labels[last - depth:])
        if entry == "" or entry == "in-addr.arpa":
            break
        entries.append(entry)
    return entries


def new_domain_update(chunk: int, entry: str, count: int) -> Update:
    """Upsert for a domain not yet in the exploded DNS collection."""
    query = {
        "$push": {"dat": {"visited": count, "cid": chunk}},
        "$set": {"cid": chunk},
        "$inc": {"subdomain_count": 1},
    }
    return Update({"domain": entry}, query)


def existing_domain_update(
    chunk: int, entry: str, count: int, last_updated: int, already_counted: bool
) -> Update:
    """Upsert for a domain already in the collection.

    If it was last updated in this chunk the chunk's entry is incremented,
    otherwise a new chunk entry is pushed. The subdomain count is only raised
    when the full name was not already known.
    """
    if last_updated == chunk:
        if already_counted:
            query = {"$inc": {"dat.$.visited": count}}
        else:
            query = {"$inc": {"subdomain_count": 1, "dat.$.visited": count}}
        return Update({"domain": entry, "dat.cid": chunk}, query)

    push = {"dat": {"visited": count, "cid": chunk}}
    if already_counted:
        query = {"$set": {"cid": chunk}, "$push": push}
    else:
        query = {"$set": {"cid": chunk}, "$inc": {"subdomain_count": 1}, "$push": push}
    return Update({"domain": entry}, query)


def results_pipeline(limit: int, no_limit: bool) -> list[dict]:
    """Aggregation summing visits per domain, sorted by subdomain count."""
    pipeline = [
        {"$unwind": "$dat"},
        {"$project": {"domain": 1, "subdomain_count": 1, "visited": "$dat.visited"}},
        {
            "$group": {
                "_id": "$domain",
                "visited": {"$sum": "$visited"},
                "subdomain_count": {"$first": "$subdomain_count"},
            }
        },
        {"$project": {"_id": 0, "domain": "$_id", "visited": 1, "subdomain_count": 1}},
        {"$sort": {"visited": -1}},
        {"$sort": {"subdomain_count": -1}},
    ]
    if not no_limit:
        pipeline.append({"$limit": limit})
    return pipeline


class ExplodedDNSRepository:
    """Reads and writes the exploded DNS collection."""

    def __init__(self, db, table: str, hostnames_table: str, chunk: int, log: logging.Logger | None = None) -> None:
        self._db = db
        self._table = table
        self._hostnames_table = hostnames_table
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
        collection.create_index([("domain", ASCENDING)], unique=True)
        collection.create_index([("subdomain_count", ASCENDING)])

    def upsert(self, domain_map: dict[str, int]) -> None:
        """Explode every queried name and write the per-domain counts."""
        target = self._db[self._table]
        writer = WorkerPool(lambda update: upsert_update(target, update, self._log, "dns"))
        analyzer = WorkerPool(lambda item: self._analyze(item[0], item[1], writer.collect), on_close=writer.close)
        for _ in range(worker_count()):
            analyzer.start()
            writer.start()

        total = len(domain_map)
        done = 0
        try:
            for name, count in domain_map.items():
                analyzer.collect((_truncate_key(name), count))
                done += 1
        finally:
            print(f"\t[-] Exploded DNS Analysis:        {done} / {total}")
            analyzer.close()

    def results(self, limit: int, no_limit: bool) -> list[ExplodedDNSResult]:
        """Domains with their subdomain and lookup counts."""
        docs = self._db[self._table].aggregate(results_pipeline(limit, no_limit), allowDiskUse=True)
        return [
            ExplodedDNSResult(
                domain=doc.get("domain", ""),
                subdomain_count=int(doc.get("subdomain_count", 0)),
                visited=int(doc.get("visited", 0)),
            )
            for doc in docs
        ]

    def _analyze(self, name: str, count: int, emit) -> None:
        already_counted = self._find_one(self._hostnames_table, {"host": name}) is not None
        for entry in explode_domain(name):
            existing = self._find_one(self._table, {"domain": entry})
            if existing is None:
                emit(new_domain_update(self._chunk, entry, count))
            else:
                last_updated = int(existing.get("cid", 0))
                emit(existing_domain_update(self._chunk, entry, count, last_updated, already_counted))

    def _find_one(self, table: str, selector: dict):
        try:
            return self._db[table].find_one(selector)
        except PyMongoError as exc:
            self._log.error("[dns] lookup in %s failed: %s", table, exc)
            return None