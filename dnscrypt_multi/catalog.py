from __future__ import annotations

"""
Resolver catalog sources and CSV loading.

The catalog is the dnscrypt resolvers CSV file. It can come from three places,
chosen by the shape of the location string:

    s3://<bucket>/<key>        # downloaded with boto3 into the cache directory
    http(s)://<host>/<path>    # downloaded with httpx into the cache directory
    <path>                     # read in place from the local filesystem

Every source hydrates the catalog onto the local filesystem and returns a
`CatalogDocument`, so the loader always works on a regular `Path`. Rows are
validated by `ResolverRecord`; rows that fail validation are skipped with a
warning and never reach the orchestrator.
"""

import argparse
import csv
import dataclasses
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable
from urllib.parse import urlparse

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import (
    DEFAULT_CATALOG_CACHE_DIR,
    DEFAULT_RESOLVER_PORT,
    DEFAULT_RESOLVERS_LIST,
    DEFAULT_RESOLVERS_LIST_ENCODING,
)
from .errors import CatalogError
from .logs import VERBOSE
from .types import Candidate

LOGGER = logging.getLogger("Multi.Catalog")

RESOLVER_ADDRESS = "Resolver address"
PROVIDER_NAME = "Provider name"
PROVIDER_KEY = "Provider public key"
DNSSEC_VALIDATION = "DNSSEC validation"

_ADDRESS_PATTERN = re.compile(r"^([A-Za-z0-9]{1,3}\.){3}[A-Za-z0-9]{1,3}(:\d+)?$")
_PROVIDER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9]+[A-Za-z0-9.-]+\.[A-Za-z]+$")
_PROVIDER_KEY_PATTERN = re.compile(r"^([A-Za-z0-9]{4}:){15}[A-Za-z0-9]{4}$")
_PORT_SUFFIX = re.compile(r":\d+$")
_HTTP_TIMEOUT = 30.0


class CatalogDocument(BaseModel):
    """A catalog file hydrated onto the local filesystem."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    path: Path
    backend: str


class ResolverRecord(BaseModel):
    """One validated catalog row."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    resolver_address: str = Field(alias=RESOLVER_ADDRESS)
    provider_name: str = Field(alias=PROVIDER_NAME)
    provider_key: str = Field(alias=PROVIDER_KEY)

    @field_validator("resolver_address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not _ADDRESS_PATTERN.match(value):
            raise ValueError("invalid or unsupported resolver address")
        return value

    @field_validator("provider_name")
    @classmethod
    def _check_provider_name(cls, value: str) -> str:
        if not _PROVIDER_NAME_PATTERN.match(value):
            raise ValueError("invalid provider name")
        return value

    @field_validator("provider_key")
    @classmethod
    def _check_provider_key(cls, value: str) -> str:
        if not _PROVIDER_KEY_PATTERN.match(value):
            raise ValueError("invalid provider key")
        return value

    @property
    def has_port(self) -> bool:
        return bool(_PORT_SUFFIX.search(self.resolver_address))

    def to_candidate(self) -> Candidate:
        address = self.resolver_address
        if not self.has_port:
            address = f"{address}:{DEFAULT_RESOLVER_PORT}"
        return Candidate(
            resolver_address=address,
            provider_name=self.provider_name,
            provider_key=self.provider_key,
        )


@runtime_checkable
class CatalogSource(Protocol):
    backend_name: str

    def hydrate(self) -> CatalogDocument: ...


class LocalCatalogSource:
    backend_name = "local"

    def __init__(self, path: Path) -> None:
        self._path = path.expanduser()

    def hydrate(self) -> CatalogDocument:
        path = self._path
        if not path.is_file():
            raise CatalogError(f"Not a readable file: {path}")
        if not os.access(path, os.R_OK):
            raise CatalogError(f"Not a readable file: {path}")
        return CatalogDocument(path=path.resolve(), backend=self.backend_name)


class HttpCatalogSource:
    backend_name = "http"

    def __init__(
        self,
        url: str,
        *,
        cache_dir: Path | None = None,
        client: httpx.Client | None = None,
        timeout: float = _HTTP_TIMEOUT,
    ) -> None:
        self.url = url
        self.cache_dir = (cache_dir or DEFAULT_CATALOG_CACHE_DIR).expanduser().resolve()
        self._client = client
        self._timeout = timeout

    def hydrate(self) -> CatalogDocument:
        LOGGER.info("Downloading resolvers list from %s into %s", self.url, self.cache_dir)
        name = Path(urlparse(self.url).path).name or "resolvers.csv"
        destination = self.cache_dir / name
        try:
            if self._client is not None:
                response = self._client.get(self.url)
            else:
                with httpx.Client(timeout=self._timeout, follow_redirects=True) as client:
                    response = client.get(self.url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CatalogError(f"Failed to download resolvers list {self.url}: {exc}") from exc

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(response.content)
        except OSError as exc:
            raise CatalogError(f"Failed to stage resolvers list locally: {exc}") from exc
        return CatalogDocument(path=destination, backend=self.backend_name)


class S3CatalogSource:
    backend_name = "s3"

    def __init__(
        self,
        bucket: str,
        key: str,
        *,
        cache_dir: Path | None = None,
        region: str | None = None,
    ) -> None:
        if not bucket or not key:
            raise CatalogError("Both a bucket and a key are required for an S3 resolvers list.")
        self.bucket = bucket
        self.key = key.lstrip("/")
        self.cache_dir = (cache_dir or DEFAULT_CATALOG_CACHE_DIR).expanduser().resolve()
        self._session = (
            boto3.session.Session(region_name=region)
            if region
            else boto3.session.Session()
        )

    def hydrate(self) -> CatalogDocument:
        LOGGER.info(
            "Downloading resolvers list from s3://%s/%s into %s",
            self.bucket,
            self.key,
            self.cache_dir,
        )
        destination = self.cache_dir / Path(self.key).name
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._session.client("s3").download_file(self.bucket, self.key, str(destination))
        except (ClientError, BotoCoreError) as exc:
            raise CatalogError(
                f"Failed to fetch resolvers list from s3://{self.bucket}/{self.key}: {exc}"
            ) from exc
        except OSError as exc:
            raise CatalogError(f"Failed to stage resolvers list locally: {exc}") from exc
        return CatalogDocument(path=destination, backend=self.backend_name)


def source_for(
    location: str,
    *,
    cache_dir: Path | None = None,
    region: str | None = None,
) -> CatalogSource:
    parsed = urlparse(location)
    if parsed.scheme == "s3":
        return S3CatalogSource(
            bucket=parsed.netloc,
            key=parsed.path,
            cache_dir=cache_dir,
            region=region,
        )
    if parsed.scheme in ("http", "https"):
        return HttpCatalogSource(location, cache_dir=cache_dir)
    return LocalCatalogSource(Path(location))


def hydrate_catalog(
    location: str,
    *,
    cache_dir: Path | None = None,
    region: str | None = None,
) -> CatalogDocument:
    source = source_for(location, cache_dir=cache_dir, region=region)
    document = source.hydrate()
    LOGGER.debug("Hydrated resolvers list using backend '%s' at %s", document.backend, document.path)
    return document


def _describe_failure(exc: ValidationError) -> str:
    error = exc.errors()[0]
    field = error["loc"][0] if error["loc"] else "row"
    return f"{field}: {error['msg']}"


def parse_rows(rows: Sequence[Dict[str, Optional[str]]], *, dnssec_only: bool = False) -> List[Candidate]:
    candidates: List[Candidate] = []
    for row in rows:
        address = row.get(RESOLVER_ADDRESS)
        if dnssec_only and row.get(DNSSEC_VALIDATION) != "yes":
            LOGGER.log(
                VERBOSE,
                "Ignoring entry that doesn't support DNSSEC validation: %s",
                address,
            )
            continue
        try:
            record = ResolverRecord.model_validate(row)
        except ValidationError as exc:
            LOGGER.warning("Ignoring entry %s (%s).", address, _describe_failure(exc))
            continue
        if not record.has_port:
            LOGGER.warning(
                "Using default port %s for %s.", DEFAULT_RESOLVER_PORT, record.resolver_address
            )
        candidates.append(record.to_candidate())
    return candidates


def load_catalog(
    path: Path,
    *,
    encoding: str = DEFAULT_RESOLVERS_LIST_ENCODING,
    dnssec_only: bool = False,
) -> List[Candidate]:
    """Read a resolvers CSV file and return its usable entries in file order."""

    try:
        with open(path, newline="", encoding=encoding) as handle:
            rows = list(csv.DictReader(handle))
    except (OSError, UnicodeDecodeError, LookupError, csv.Error) as exc:
        raise CatalogError(f"Failed to read resolvers list {path}: {exc}") from exc

    if not rows:
        raise CatalogError(f'Resolvers list file "{path}" does not contain any entry.')

    candidates = parse_rows(rows, dnssec_only=dnssec_only)
    if not candidates:
        raise CatalogError("All entries have been filtered out.")
    LOGGER.info("Loaded %s of %s resolver entries from %s.", len(candidates), len(rows), path)
    return candidates


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Load a resolvers list and print the usable entries as JSON."
    )
    parser.add_argument("location", nargs="?", default=DEFAULT_RESOLVERS_LIST)
    parser.add_argument("--encoding", default=DEFAULT_RESOLVERS_LIST_ENCODING)
    parser.add_argument("--dnssec-only", action="store_true")
    parser.add_argument("--region", default=os.environ.get("CATALOG_S3_REGION"))
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=Path(os.environ.get("CATALOG_CACHE_DIR", DEFAULT_CATALOG_CACHE_DIR)),
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> List[Candidate]:
    args = _parse_cli_args(argv)
    document = hydrate_catalog(args.location, cache_dir=args.cache_dir, region=args.region)
    candidates = load_catalog(
        document.path, encoding=args.encoding, dnssec_only=args.dnssec_only
    )
    print(json.dumps([dataclasses.asdict(candidate) for candidate in candidates], indent=2))
    return candidates


if __name__ == "__main__":
    main()
