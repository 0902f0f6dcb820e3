"""Record resolved and client IPs for every queried hostname."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from rita.data import UniqueIP, UniqueIPSet, UniqueSrcIP
from rita.workers import Update, WorkerPool, upsert_update, worker_count

_default_log = logging.getLogger(__name__)

_MAX_KEY_BYTES = 1024
_TRUNCATED_KEY_BYTES = 800


def _ip_document(ip: UniqueIP) -> dict:
    return {"ip": ip.ip, "network_uuid": ip.network_uuid, "network_name": ip.network_name}


def _truncate_key(name: str) -> str:
    raw = name.encode("utf-8")
    if len(raw) > _MAX_KEY_BYTES:
        return raw[:_TRUNCATED_KEY_BYTES].decode("utf-8", errors="ignore")
    return name


@dataclass
class HostnameInput:
    """A hostname with the IPs it resolved to and the clients that queried it."""

    host: str
    resolved_ips: UniqueIPSet = field(default_factory=UniqueIPSet)
    client_ips: UniqueIPSet = field(default_factory=UniqueIPSet)


@dataclass
class FqdnInput:
    """Connection data from a single source to a hostname."""

    fqdn: str
    src: UniqueSrcIP
    resolved_ips: UniqueIPSet = field(default_factory=UniqueIPSet)
    invalid_cert_flag: bool = False
    connection_count: int = 0
    total_bytes: int = 0
    ts_list: list[int] = field(default_factory=list)
    orig_bytes_list: list[int] = field(default_factory=list)
    dst_bson_list: list[dict] = field(default_factory=list)


def _is_skipped(host: str) -> bool:
    return host == "" or host.endswith("in-addr.arpa")


def hostname_update(chunk: int, datum: HostnameInput, blacklisted: bool) -> Update:
    """Upsert appending this chunk's IPs to the hostname's record."""
    push = {
        "dat": {
            "ips": [_ip_document(ip) for ip in datum.resolved_ips],
            "src_ips": [_ip_document(ip) for ip in datum.client_ips],
            "cid": chunk,
        }
    }
    if blacklisted:
        set_fields = {"blacklisted": True, "cid": chunk}
    else:
        set_fields = {"cid": chunk}
    return Update({"host": datum.host}, {"$push": push, "$set": set_fields})


class HostnameRepository:
    """Writes hostname data into its collection."""

    def __init__(self, db, blacklist_db, table: str, chunk: int, log: logging.Logger | None = None) -> None:
        self._db = db
        self._blacklist_db = blacklist_db
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
        collection.create_index([("host", ASCENDING)], unique=True)
        collection.create_index([("dat.ips.ip", ASCENDING), ("dat.ips.network_uuid", ASCENDING)])

    def upsert(self, hostname_map: dict[str, HostnameInput]) -> None:
        """Analyze every hostname and write the results."""
        target = self._db[self._table]
        writer = WorkerPool(lambda update: upsert_update(target, update, self._log, "hostname"))
        analyzer = WorkerPool(lambda datum: self._analyze(datum, writer.collect), on_close=writer.close)
        for _ in range(worker_count()):
            analyzer.start()
            writer.start()

        total = len(hostname_map)
        done = 0
        try:
            for entry in hostname_map.values():
                analyzer.collect(replace(entry, host=_truncate_key(entry.host)))
                done += 1
        finally:
            print(f"\t[-] Hostname Analysis:        {done} / {total}")
            analyzer.close()

    def _analyze(self, datum: HostnameInput, emit) -> None:
        if _is_skipped(datum.host):
            return
        emit(hostname_update(self._chunk, datum, self._is_blacklisted(datum.host)))

    def _is_blacklisted(self, host: str) -> bool:
        try:
            return self._blacklist_db["hostname"].count_documents({"index": host}) > 0
        except PyMongoError as exc:
            self._log.error("[hostname] blacklist lookup failed: %s", exc)
            return False