import logging
import sys
from typing import Optional

from rich import print

from acl import READ_WRITE_EXECUTE
from header import VERSION_PACKED, Header
from log import setup_logging
from meta import Metadata
from pagefile import open_pagefile
from planner import LayoutPlanner

ROOT_PAGE = "/"
EVERYONE = "*"


def blank_planner(metadata: Metadata, version: int = VERSION_PACKED) -> LayoutPlanner:
    """Planner for an empty database: a root page everyone may use"""
    planner = LayoutPlanner(version=version, alignment=metadata.chunk_alignment)
    planner.add_page(ROOT_PAGE, acl=[(EVERYONE, READ_WRITE_EXECUTE)])
    planner.set_meta(metadata.pack())
    return planner


def mkdb(image_path: str, metadata: Optional[Metadata] = None, version: int = VERSION_PACKED) -> Header:
    """Write a blank page file to image_path"""
    if metadata is None:
        metadata = Metadata()
    planner = blank_planner(metadata, version)
    with open(image_path, "wb") as f:
        return planner.write_to(f)


def main():
    setup_logging(logging.INFO)
    image_path = sys.argv[1] if len(sys.argv) > 1 else "pages.db"
    name = sys.argv[2] if len(sys.argv) > 2 else ""

    header = mkdb(image_path, Metadata(friendly_name=name))
    db = open_pagefile(image_path)
    db.validate()
    print(f"Created [bold]{image_path}[/bold] (format version {header.version})")
    for table, (offset, length) in header.tables().items():
        print(f"  {table:8} offset={offset:#06x} length={length}")
    print(f"  pages: {sorted(p.decode() for p in db.pages())}")


if __name__ == "__main__":
    main()
