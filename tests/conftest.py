import struct

import pytest

import aarklash_loc as loc

# nb d'entrées du fichier livré : la table des longueurs tombe pile sur LENGTH_TABLE_OFFSET
GAME_RECORD_COUNT = (loc.LENGTH_TABLE_OFFSET - loc.INDEX_TABLE_OFFSET) // loc.INDEX_ENTRY_SIZE

HEADER_FILL = bytes(range(0x18, 0x51))
RESERVED = b"RSVDRSVD"


def make_db(rows, order_indices=None, lengths=None, magic=loc.MAGIC.encode("ascii"),
            index_table_length=None):
    """
    Construit un .db synthétique.
    rows : liste de (id, texte) ; texte str, bytes (brut, sans NUL) ou "" / None pour vide.
    """
    buf = bytearray(magic)
    buf += HEADER_FILL
    assert len(buf) == loc.INDEX_TABLE_LENGTH_OFFSET
    if index_table_length is None:
        index_table_length = len(rows) * loc.INDEX_ENTRY_SIZE
    buf += struct.pack("<i", index_table_length)
    buf += RESERVED

    for i, (string_id, _) in enumerate(rows):
        order_index = order_indices[i] if order_indices is not None else i
        buf += struct.pack("<ii", string_id, order_index)

    block = bytearray()
    computed = []
    for _, text in rows:
        if not text:
            computed.append(0)
            continue
        raw = text if isinstance(text, bytes) else text.encode("utf-8")
        block += raw + b"\x00"
        computed.append(len(raw) + 1)

    for length in (lengths if lengths is not None else computed):
        buf += struct.pack("<i", length)
    buf += struct.pack("<i", len(block))
    buf += block
    return bytes(buf)


def game_rows():
    rows = [
        (5, "Hello"),
        (9, ""),
        (12, "Épée de Rhan"),
        (40, "Ligne 1\nLigne 2"),
        (7, "雪"),
    ]
    filler = GAME_RECORD_COUNT - len(rows)
    for k in range(filler):
        text = f"Texte {k}" if k % 7 == 0 else ""
        rows.append((100000 + k, text))
    return rows


@pytest.fixture
def small_db():
    return make_db([(5, "Hello"), (9, ""), (3, "Un deux")])


@pytest.fixture
def template_rows():
    return game_rows()


@pytest.fixture
def template_db(template_rows):
    buf = make_db(template_rows)
    assert loc.INDEX_TABLE_OFFSET + len(template_rows) * 8 == loc.LENGTH_TABLE_OFFSET
    return buf


@pytest.fixture
def template_file(tmp_path, template_db):
    path = tmp_path / "Default_loc_en.db"
    path.write_bytes(template_db)
    return path
