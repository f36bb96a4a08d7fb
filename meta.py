import json

import attr


@attr.s(auto_attribs=True)
class Metadata:
    """Database preferences kept in the meta blob.

    The page file core never reads these; they are for whoever owns the
    database (allocators, hooks, tooling).
    """
    friendly_name: str = ""
    max_page_size: int = 0x1_000_000_000
    max_chunk_size: int = 0x1_000_000
    chunk_alignment: int = 0x10
    page_alignment: int = 0x10
    max_journal_size: int = 100

    def pack(self) -> bytes:
        return json.dumps(attr.asdict(self), sort_keys=True).encode("utf-8")

    @classmethod
    def unpack(cls, data: bytes) -> "Metadata":
        fields = json.loads(data.decode("utf-8"))
        known = {a.name for a in attr.fields(cls)}
        return cls(**{k: v for k, v in fields.items() if k in known})
