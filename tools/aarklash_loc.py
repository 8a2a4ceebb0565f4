#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
aarklash_loc.py

Outil CLI pour extraire / réinjecter les textes des fichiers de localisation
d'Aarklash: Legacy (Default_loc_*.db).

Format (little-endian, offsets fixes) :
- 0x00 : signature ASCII "GAMENAME_DSMGR2010100801" (24 octets)
- 0x18 : en-tête opaque (57 octets), recopié tel quel
- 0x51 : <int32 taille_table_index>  (= nb_entrées * 8)
- 0x55 : 8 octets réservés
- 0x5D : table d'index, nb_entrées x <int32 id><int32 order_index>
- ensuite : table des longueurs, nb_entrées x <int32 longueur> (NUL inclus, 0 = vide)
- ensuite : <int32 taille_bloc> puis le bloc de textes UTF-8 terminés par NUL

Dans le fichier livré avec le jeu, la table des longueurs commence à l'offset
22365. L'écriture s'appuie sur cette valeur : on recopie les 22365 premiers
octets du fichier d'origine, puis on reconstruit longueurs + bloc de textes.
Le nombre d'entrées et leur ordre ne changent donc jamais.

Usage :
  python aarklash_loc.py info    Default_loc_en.db
  python aarklash_loc.py export  Default_loc_en.db -o Default_loc_en.json
  python aarklash_loc.py import  Default_loc_en.db Default_loc_fr.json -o Default_loc_fr.db
  python aarklash_loc.py convert Default_loc_en.db      (mode "un seul argument")
  python aarklash_loc.py convert Default_loc_en.json    (gabarit: Default_loc_en.db)

Le JSON est un tableau [{"Id": ..., "Text": ...}, ...] dans l'ordre du fichier,
compatible avec les exports de l'ancien convertisseur.

Limitations assumées :
- Une seule version d'en-tête connue ; pas de détection d'autres variantes.
- On ne peut ni ajouter ni supprimer d'entrées : les Id absents du .db sont ignorés.
- Un texte contenant un NUL est écrit tel quel (le jeu s'arrête au premier NUL) sauf avec --reject-nul.
- Un texte en UTF-8 invalide est relu avec U+FFFD : même sans modification,
  un import réécrit ces octets différemment.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import struct
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

log = logging.getLogger(__name__)

BytesOrPath = Union[bytes, bytearray, memoryview, str, "os.PathLike[str]"]


# -------------------------
# Constantes du format
# -------------------------

MAGIC = "GAMENAME_DSMGR2010100801"
MAGIC_SIZE = 24

INDEX_TABLE_LENGTH_OFFSET = 0x51
RESERVED_SIZE = 8
INDEX_TABLE_OFFSET = INDEX_TABLE_LENGTH_OFFSET + 4 + RESERVED_SIZE  # 0x5D
INDEX_ENTRY_SIZE = 8

# Début de la table des longueurs dans le fichier du jeu (2784 entrées).
# Constante du format : elle n'est pas recalculée à partir du nb d'entrées.
LENGTH_TABLE_OFFSET = 22365


# -------------------------
# Utilitaires de base
# -------------------------

class FormatError(Exception):
    pass


def i32le(b: bytes, off: int) -> int:
    return struct.unpack_from("<i", b, off)[0]


def _need(buf: bytes, off: int, size: int, what: str) -> None:
    if size < 0 or off + size > len(buf):
        raise FormatError(
            f"Fichier tronqué: {what} attendu à l'offset {off} ({size} octets), "
            f"taille du fichier={len(buf)}."
        )


def _read_i32(buf: bytes, off: int, what: str) -> int:
    _need(buf, off, 4, what)
    return i32le(buf, off)


def _load_bytes(src: BytesOrPath) -> bytes:
    if isinstance(src, (bytes, bytearray, memoryview)):
        return bytes(src)
    return Path(src).read_bytes()


# -------------------------
# Table de chaînes
# -------------------------

@dataclass(frozen=True)
class LocTable:
    """
    Contenu d'un .db une fois lu.

    ordered_ids    : les Id dans l'ordre exact de la table d'index (ordre d'écriture).
    strings        : Id -> texte ("" pour une entrée vide).
    order_indices  : 2e entier de chaque entrée d'index, conservé tel quel.
                     Il n'est jamais réécrit : la table d'index fait partie du
                     préfixe recopié à l'identique.

    Les listes sont figées en tuples et strings en MappingProxyType à la
    construction : une table lue ne se modifie pas, build_loc_db travaille sur une copie.
    """
    ordered_ids: Tuple[int, ...]
    strings: Mapping[int, str]
    order_indices: Tuple[int, ...] = field(default_factory=tuple)
    text_block_length: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "ordered_ids", tuple(self.ordered_ids))
        object.__setattr__(self, "strings", MappingProxyType(dict(self.strings)))
        object.__setattr__(self, "order_indices", tuple(self.order_indices))

    @property
    def record_count(self) -> int:
        return len(self.ordered_ids)

    def text(self, string_id: int) -> str:
        return self.strings.get(string_id, "")


# -------------------------
# Lecture .db
# -------------------------

def parse_loc_db(src: BytesOrPath) -> LocTable:
    """
    Parse un fichier .db (chemin ou contenu brut).
    Lève FormatError si la signature, le nombre d'entrées ou les tailles sont incohérents.
    """
    buf = _load_bytes(src)

    _need(buf, 0, MAGIC_SIZE, "signature")
    magic = buf[:MAGIC_SIZE].decode("ascii", errors="replace")
    log.debug("[parse] signature: %s", magic)
    if magic != MAGIC:
        raise FormatError(f"Signature invalide: {magic!r} (attendu {MAGIC!r}).")

    index_table_length = _read_i32(buf, INDEX_TABLE_LENGTH_OFFSET, "taille de la table d'index")
    record_count = index_table_length // INDEX_ENTRY_SIZE
    log.debug("[parse] table d'index: %d octets -> %d entrées", index_table_length, record_count)
    if record_count <= 0:
        raise FormatError(
            f"Nombre d'entrées invalide: {record_count} (taille table d'index={index_table_length})."
        )

    # 8 octets réservés entre la taille et la table d'index
    _need(buf, INDEX_TABLE_LENGTH_OFFSET + 4, RESERVED_SIZE, "zone réservée")
    off = INDEX_TABLE_OFFSET

    _need(buf, off, record_count * INDEX_ENTRY_SIZE, "table d'index")
    ordered_ids: List[int] = []
    order_indices: List[int] = []
    for _ in range(record_count):
        string_id, order_index = struct.unpack_from("<ii", buf, off)
        ordered_ids.append(string_id)
        order_indices.append(order_index)
        off += INDEX_ENTRY_SIZE

    log.debug("[parse] table des longueurs à l'offset %d", off)
    _need(buf, off, record_count * 4, "table des longueurs")
    lengths = list(struct.unpack_from(f"<{record_count}i", buf, off))
    off += record_count * 4

    log.debug("[parse] taille du bloc de textes à l'offset %d", off)
    text_block_length = _read_i32(buf, off, "taille du bloc de textes")
    off += 4
    _need(buf, off, text_block_length, "bloc de textes")
    block = buf[off : off + text_block_length]
    log.debug("[parse] bloc de textes: %d octets", text_block_length)

    strings: Dict[int, str] = {}
    cur = 0
    for i, (string_id, length) in enumerate(zip(ordered_ids, lengths)):
        if length > 0:
            if cur + length > len(block):
                raise FormatError(
                    f"Entrée {i} (id={string_id}): longueur {length} à la position {cur} "
                    f"dépasse le bloc de textes ({len(block)} octets)."
                )
            # longueur - 1 : le NUL final n'appartient pas au texte
            chunk = block[cur : cur + length - 1]
            try:
                text = chunk.decode("utf-8")
            except UnicodeDecodeError:
                log.warning("[parse] id=%d: UTF-8 invalide, caractères remplacés", string_id)
                text = chunk.decode("utf-8", errors="replace")
            strings[string_id] = text
            cur += length
        elif string_id not in strings:
            # une entrée vide n'écrase jamais un texte déjà lu pour le même Id
            strings[string_id] = ""

    return LocTable(
        ordered_ids=ordered_ids,
        strings=strings,
        order_indices=order_indices,
        text_block_length=text_block_length,
    )


# -------------------------
# Écriture .db
# -------------------------

def merge_edits(original: LocTable, edits: Mapping[int, Optional[str]]) -> Dict[int, Optional[str]]:
    """Copie des textes d'origine avec les modifications appliquées (Id inconnus ignorés)."""
    final: Dict[int, Optional[str]] = dict(original.strings)
    for string_id, text in edits.items():
        if string_id in final:
            final[string_id] = text
    return final


def build_loc_db(
    template: BytesOrPath,
    original: LocTable,
    edits: Mapping[int, Optional[str]],
    reject_nul: bool = False,
) -> bytes:
    """
    Reconstruit un .db à partir du fichier d'origine (gabarit) :
    - préfixe [0, LENGTH_TABLE_OFFSET) recopié tel quel (en-tête + table d'index)
    - nouvelle table des longueurs, dans l'ordre original.ordered_ids
    - <int32 taille_bloc> + nouveau bloc de textes

    Un texte vide (ou None) donne une longueur 0 et aucun octet dans le bloc.
    """
    base_buf = _load_bytes(template)
    if len(base_buf) < LENGTH_TABLE_OFFSET:
        raise FormatError(
            f"Gabarit trop petit: {len(base_buf)} octets (au moins {LENGTH_TABLE_OFFSET} attendus)."
        )

    expected_offset = INDEX_TABLE_OFFSET + original.record_count * INDEX_ENTRY_SIZE
    if expected_offset != LENGTH_TABLE_OFFSET:
        log.warning(
            "[build] %d entrées: la table des longueurs devrait commencer à %d, "
            "elle sera écrite à l'offset fixe %d",
            original.record_count, expected_offset, LENGTH_TABLE_OFFSET,
        )

    final = merge_edits(original, edits)

    lengths: List[int] = []
    block = bytearray()
    for string_id in original.ordered_ids:
        text = final.get(string_id)
        if not text:
            lengths.append(0)
            continue
        if reject_nul and "\x00" in text:
            raise FormatError(f"id={string_id}: le texte contient un caractère NUL.")
        raw = text.encode("utf-8")
        block.extend(raw)
        block.append(0)
        lengths.append(len(raw) + 1)

    out = bytearray(base_buf[:LENGTH_TABLE_OFFSET])
    out.extend(struct.pack(f"<{len(lengths)}i", *lengths))
    out.extend(struct.pack("<i", len(block)))
    out.extend(block)
    return bytes(out)


def save_loc_db(
    template_path: Union[str, "os.PathLike[str]"],
    output_path: Union[str, "os.PathLike[str]"],
    original: LocTable,
    edits: Mapping[int, Optional[str]],
    reject_nul: bool = False,
) -> int:
    """Écrit le nouveau .db sur disque. Retourne sa taille en octets."""
    out_bytes = build_loc_db(template_path, original, edits, reject_nul=reject_nul)
    Path(output_path).write_bytes(out_bytes)
    log.info("[save] %s: %d chaînes, %d octets", output_path, len(original.strings), len(out_bytes))
    return len(out_bytes)


# -------------------------
# Projection JSON
# -------------------------

def table_to_json_obj(table: LocTable) -> List[Dict[str, Any]]:
    return [{"Id": string_id, "Text": table.text(string_id)} for string_id in table.ordered_ids]


def _json_id(value: Any, index: int) -> int:
    if isinstance(value, bool):
        raise FormatError(f"JSON invalide: entrée {index}, Id doit être un entier.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 10)
        except ValueError:
            pass
    raise FormatError(f"JSON invalide: entrée {index}, Id doit être un entier (reçu {value!r}).")


def edits_from_json_obj(obj: Any) -> Dict[int, Optional[str]]:
    """
    Convertit le tableau JSON en modifications Id -> texte.
    Les clés sont comparées sans tenir compte de la casse ("Id"/"id", "Text"/"text").
    Text absent ou null => texte vide. Un même Id avec deux textes différents est refusé.
    """
    if obj is None:
        raise FormatError("JSON vide ou impossible à désérialiser.")
    if not isinstance(obj, list):
        raise FormatError("JSON invalide: la racine doit être une liste.")

    edits: Dict[int, Optional[str]] = {}
    for i, entry in enumerate(obj):
        if not isinstance(entry, dict):
            raise FormatError(f"JSON invalide: entrée {i} n'est pas un objet.")
        fields = {str(k).lower(): v for k, v in entry.items()}
        if "id" not in fields:
            raise FormatError(f"JSON invalide: entrée {i} sans Id.")
        string_id = _json_id(fields["id"], i)
        text = fields.get("text")
        if text is not None and not isinstance(text, str):
            raise FormatError(f"JSON invalide: entrée {i} (Id={string_id}), Text doit être une string (ou null).")
        if string_id in edits and edits[string_id] != text:
            raise FormatError(f"JSON invalide: Id {string_id} présent plusieurs fois avec des textes différents.")
        edits[string_id] = text
    return edits


def export_json(db_path: Union[str, "os.PathLike[str]"], json_path: Union[str, "os.PathLike[str]"],
                pretty: bool = True) -> int:
    """Exporte toutes les entrées du .db vers un JSON. Retourne le nombre d'entrées."""
    table = parse_loc_db(db_path)
    rows = table_to_json_obj(table)
    Path(json_path).write_text(
        json.dumps(rows, ensure_ascii=False, indent=2 if pretty else None),
        encoding="utf-8",
    )
    log.info("[export] %s -> %s (%d entrées)", db_path, json_path, len(rows))
    return len(rows)


def import_json(
    json_path: Union[str, "os.PathLike[str]"],
    template_path: Union[str, "os.PathLike[str]"],
    output_path: Union[str, "os.PathLike[str]"],
    reject_nul: bool = False,
) -> int:
    """
    Réinjecte un JSON dans un nouveau .db en gardant la structure du .db d'origine.
    Retourne le nombre d'Id du JSON effectivement présents dans le gabarit.
    """
    # utf-8-sig : l'ancien outil écrivait ses JSON avec un BOM
    obj = json.loads(Path(json_path).read_text(encoding="utf-8-sig"))
    edits = edits_from_json_obj(obj)

    base_buf = Path(template_path).read_bytes()
    original = parse_loc_db(base_buf)

    known = sum(1 for string_id in edits if string_id in original.strings)
    if known != len(edits):
        log.warning("[import] %d Id absents du gabarit, ignorés", len(edits) - known)

    out_bytes = build_loc_db(base_buf, original, edits, reject_nul=reject_nul)
    Path(output_path).write_bytes(out_bytes)
    log.info("[import] %s -> %s (%d octets)", json_path, output_path, len(out_bytes))
    return known


# -------------------------
# CLI
# -------------------------

def default_import_output(json_path: Path, template_path: Path) -> Path:
    out = json_path.with_suffix(".db")
    if out.resolve() == template_path.resolve():
        # ne jamais écraser le gabarit par défaut
        out = template_path.with_name(template_path.stem + ".new.db")
    return out


def cmd_info(args: argparse.Namespace) -> int:
    table = parse_loc_db(args.db_file)
    non_empty = sum(1 for string_id in table.ordered_ids if table.text(string_id))

    print(f"Fichier: {args.db_file}")
    print(f"Signature: {MAGIC}")
    print(f"Entrées: {table.record_count} | non vides: {non_empty} | vides: {table.record_count - non_empty}")
    print(f"Bloc de textes: {table.text_block_length} octets")
    print()
    print("       id | order | aperçu")
    print("----------+-------+---------------------------------------")

    for string_id, order_index in list(zip(table.ordered_ids, table.order_indices))[: args.limit]:
        preview = table.text(string_id)[:40].replace("\n", "\\n")
        print(f"{string_id:9d} | {order_index:5d} | {preview}")

    if table.record_count > args.limit:
        print(f"\n… {table.record_count - args.limit} autres (augmente --limit).")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    out_path = Path(args.output) if args.output else Path(args.db_file).with_suffix(".json")
    count = export_json(args.db_file, out_path, pretty=not args.compact)
    print(f"OK: export -> {out_path} ({count} entrées)")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    template = Path(args.db_file)
    json_path = Path(args.json_file)
    out_path = Path(args.output) if args.output else default_import_output(json_path, template)
    known = import_json(json_path, template, out_path, reject_nul=args.reject_nul)
    print(f"OK: import -> {out_path} (entrées reprises du JSON: {known})")
    return 0


def cmd_convert(args: argparse.Namespace) -> int:
    src = Path(args.file)
    if not src.is_file():
        raise FileNotFoundError(f"Fichier source introuvable: {src}")

    ext = src.suffix.lower()
    if ext == ".db":
        args.db_file = str(src)
        args.compact = False
        return cmd_export(args)

    template = Path(args.template) if args.template else src.with_suffix(".db")
    if not template.is_file():
        raise FileNotFoundError(
            f"Le .db d'origine est nécessaire comme gabarit, introuvable: {template}"
        )
    args.db_file = str(template)
    args.json_file = str(src)
    return cmd_import(args)


def _convert_source(value: str) -> str:
    ext = Path(value).suffix.lower()
    if not ext:
        raise argparse.ArgumentTypeError("Impossible de déterminer l'extension du fichier.")
    if ext not in (".db", ".json"):
        raise argparse.ArgumentTypeError(f"Extension non supportée: '{ext}' (attendu .db ou .json).")
    return value


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="aarklash_loc.py",
        description="Extraction/réinjection des textes des fichiers de localisation .db d'Aarklash: Legacy.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Journal détaillé (niveau DEBUG)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_info = sub.add_parser("info", help="Afficher l'en-tête et un aperçu des entrées.")
    p_info.add_argument("db_file", help="Chemin vers le .db")
    p_info.add_argument("--limit", type=int, default=20, help="Nb d'entrées à afficher")
    p_info.set_defaults(func=cmd_info)

    p_exp = sub.add_parser("export", help="Exporter en JSON.")
    p_exp.add_argument("db_file", help="Chemin vers le .db")
    p_exp.add_argument("-o", "--output", help="Fichier JSON de sortie (défaut: même nom en .json)")
    p_exp.add_argument("--compact", action="store_true", help="JSON sur une ligne (défaut: indenté)")
    p_exp.set_defaults(func=cmd_export)

    p_imp = sub.add_parser("import", help="Réinjecter un JSON dans un nouveau .db.")
    p_imp.add_argument("db_file", help="Fichier .db d'origine (gabarit)")
    p_imp.add_argument("json_file", help="JSON exporté (et éventuellement modifié)")
    p_imp.add_argument("-o", "--output", help="Fichier .db de sortie (défaut: nom du JSON en .db)")
    p_imp.add_argument("--reject-nul", action="store_true",
                       help="Refuser les textes contenant un caractère NUL")
    p_imp.set_defaults(func=cmd_import)

    p_conv = sub.add_parser("convert", help="Mode automatique selon l'extension (.db -> .json, .json -> .db).")
    p_conv.add_argument("file", type=_convert_source, help="Fichier .db ou .json")
    p_conv.add_argument("--template", help="Gabarit .db pour l'import (défaut: même nom en .db)")
    p_conv.add_argument("-o", "--output", help="Fichier de sortie")
    p_conv.add_argument("--reject-nul", action="store_true",
                        help="Refuser les textes contenant un caractère NUL")
    p_conv.set_defaults(func=cmd_convert)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    try:
        p = build_argparser()
        args = p.parse_args(sys.argv[1:] if argv is None else argv)
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.WARNING,
            format="%(levelname)s %(message)s",
        )
        return int(args.func(args))
    except FormatError as e:
        print(f"[ERREUR FORMAT] {e}", file=sys.stderr)
        return 2
    except FileNotFoundError as e:
        print(f"[ERREUR FICHIER] {e}", file=sys.stderr)
        return 2
    except json.JSONDecodeError as e:
        print(f"[ERREUR JSON] {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
