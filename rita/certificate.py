"""Record hosts that served invalid certificates."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from rita.data import UniqueIP, UniqueIPSet
from rita.workers import Update, WorkerPool, upsert_update, worker_count

_default_log = logging.getLogger(__name__)

# Caps keep documents well under the 16 MB document size limit.
_MAX_ORIG_IPS = 200003
_MAX_TUPLES = 20
_MAX_INVALID_CERTS = 10


def _ip_document(ip: UniqueIP) -> dict:
    return {"ip": ip.ip, "network_uuid": ip.network_uuid, "network_name": ip.network_name}


@dataclass
class CertificateInput:
    """Invalid certificate observations for one host."""

    host: UniqueIP
    seen: int = 0
    orig_ips: UniqueIPSet = field(default_factory=UniqueIPSet)
    invalid_certs: list[str] = field(default_factory=list)
    tuples: list[str] = field(default_factory=list)


def certificate_update(chunk: int, table: str, datum: CertificateInput) -> Update:
    """Build the upsert that appends this chunk's data to the host's record."""
    orig_ips = list(datum.orig_ips)[:_MAX_ORIG_IPS]
    tuples = list(datum.tuples)[:_MAX_TUPLES]
    invalid_certs = list(datum.invalid_certs)[:_MAX_INVALID_CERTS]
    query = {
        "$push": {
            "dat": {
                "seen": datum.seen,
                "orig_ips": [_ip_document(ip) for ip in orig_ips],
                "tuples": tuples,
                "icodes": invalid_certs,
                "cid": chunk,
            }
        },
        "$set": {
            "cid": chunk,
            "network_name": datum.host.network_name,
        },
    }
    return Update(datum.host.bson_key(), query, table)


class CertificateRepository:
    """Writes invalid certificate data into its collection."""

    def __init__(self, db, table: str, chunk: int, log: logging.Logger | None = None) -> None:
        self._db = db
        self._table = table
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
        collection.create_index([("ip", ASCENDING), ("network_uuid", ASCENDING)], unique=True)
        collection.create_index([("dat.seen", ASCENDING)])

    def upsert(self, cert_map: dict[str, CertificateInput]) -> None:
        """Analyze every entry and write the results."""
        writer = WorkerPool(
            lambda update: upsert_update(self._db[update.collection], update, self._log, "cert")
        )
        analyzer = WorkerPool(
            lambda datum: writer.collect(certificate_update(self._chunk, self._table, datum)),
            on_close=writer.close,
        )
        for _ in range(worker_count()):
            analyzer.start()
            writer.start()

        total = len(cert_map)
        done = 0
        try:
            for value in cert_map.values():
                analyzer.collect(value)
                done += 1
        finally:
            print(f"\t[-] Invalid Cert Analysis:        {done} / {total}")
            analyzer.close()