import io
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from .activity import log_activity
from .errors import LinkError, OperationCancelled, ParseError, ValidationError, WriteError
from .utils import (
    PACK_STATES,
    TAG_STATES,
    fold_text,
    is_blank,
    normalize_choice,
    strip_or_none,
    to_date_iso,
    to_int_or_none,
)

logger = logging.getLogger(__name__)

# ---------------------- Row Parser ----------------------

KNOWN_COLUMNS = {
    "nombre_paquete", "itr_asociado", "sistema", "subsistema", "estado",
    "estado_paquete", "tag_name", "estado_tag", "fecha_liberacion",
    "test_pack_index", "test_pack_nombre", "id_paquete",
}

# headers as written by the exporter, the template and the older import layouts
COLUMN_ALIASES = {
    "test_pack": "nombre_paquete",
    "nombre": "nombre_paquete",
    "paquete": "nombre_paquete",
    "itr": "itr_asociado",
    "itr_id": "itr_asociado",
    "tag": "tag_name",
    "estado_test_pack": "estado_paquete",
    "fecha_de_liberacion": "fecha_liberacion",
    "test_pack_id": "test_pack_index",
    "indice_test_pack": "test_pack_index",
}


def normalize_header(h) -> str:
    key = "_".join(fold_text(h).replace("-", " ").split())
    return COLUMN_ALIASES.get(key, key)


@dataclass
class RawRow:
    row_number: int
    values: Dict[str, Any]

    def get(self, key):
        v = self.values.get(key)
        return None if is_blank(v) else v


def parse_workbook(content: bytes) -> List[RawRow]:
    """Read the first sheet of an xlsx workbook into raw rows (header = row 1)."""
    if not content:
        raise ParseError("El archivo está vacío")
    try:
        xl = pd.ExcelFile(io.BytesIO(content), engine="openpyxl")
    except Exception as e:
        raise ParseError(f"No se pudo leer el libro Excel: {e}") from e
    if not xl.sheet_names:
        raise ParseError("El libro no contiene hojas")
    df = xl.parse(xl.sheet_names[0], dtype=object)
    df = df.dropna(how="all")
    if df.empty:
        raise ParseError(f"La hoja '{xl.sheet_names[0]}' no contiene datos")
    columns = {}
    for c in df.columns:
        key = normalize_header(c)
        if key in KNOWN_COLUMNS and key not in columns.values():
            columns[c] = key
    rows = []
    for i, rec in df.iterrows():
        values = {columns[c]: rec[c] for c in columns}
        rows.append(RawRow(row_number=int(i) + 2, values=values))
    return rows


# ---------------------- Validator ----------------------

@dataclass
class TestPackRow:
    row_number: int
    pack_index: Optional[int]
    nombre_paquete: str
    itr_asociado: Optional[str] = None
    sistema: Optional[str] = None
    subsistema: Optional[str] = None
    estado: str = "pendiente"

    def as_record(self) -> Dict[str, Any]:
        return {
            "nombre_paquete": self.nombre_paquete,
            "itr_asociado": self.itr_asociado,
            "sistema": self.sistema,
            "subsistema": self.subsistema,
            "estado": self.estado,
        }


@dataclass
class TagRow:
    row_number: int
    tag_name: str
    estado: str = "pendiente"
    fecha_liberacion: Optional[str] = None
    test_pack_index: Optional[int] = None
    test_pack_nombre: Optional[str] = None
    # parent fields carried by a denormalised (exported) row
    test_pack: Optional[TestPackRow] = None
    # id of the pack the row was exported from; tells apart packs sharing a name
    source_pack_id: Optional[int] = None


@dataclass
class InvalidRow:
    row_number: int
    kind: str
    error: ValidationError
    pack_index: Optional[int] = None


ClassifiedRow = Union[TestPackRow, TagRow, InvalidRow]


def is_tag_kind(raw: RawRow) -> bool:
    return any(raw.get(k) is not None for k in ("tag_name", "test_pack_index", "test_pack_nombre"))


def validate_test_pack_row(raw: RawRow, pack_index: Optional[int]) -> TestPackRow:
    nombre = strip_or_none(raw.get("nombre_paquete"))
    if not nombre:
        raise ValidationError("nombre_paquete", "nombre_paquete es requerido", raw.row_number)
    estado_raw = raw.get("estado_paquete")
    if estado_raw is None and pack_index is not None:
        estado_raw = raw.get("estado")
    try:
        estado = normalize_choice(estado_raw, PACK_STATES, "estado") or "pendiente"
    except ValidationError as e:
        e.row_number = raw.row_number
        raise
    return TestPackRow(
        row_number=raw.row_number,
        pack_index=pack_index,
        nombre_paquete=nombre,
        itr_asociado=strip_or_none(raw.get("itr_asociado")),
        sistema=strip_or_none(raw.get("sistema")),
        subsistema=strip_or_none(raw.get("subsistema")),
        estado=estado,
    )


def validate_tag_row(raw: RawRow, today: Optional[date] = None) -> TagRow:
    n = raw.row_number
    tag_name = strip_or_none(raw.get("tag_name"))
    if not tag_name:
        raise ValidationError("tag_name", "tag_name es requerido", n)

    estado_raw = raw.get("estado_tag")
    if estado_raw is None and raw.get("nombre_paquete") is None:
        estado_raw = raw.get("estado")
    try:
        estado = normalize_choice(estado_raw, TAG_STATES, "estado") or "pendiente"
    except ValidationError as e:
        e.row_number = n
        raise
    fecha = None
    if estado == "liberado":
        fecha = to_date_iso(raw.get("fecha_liberacion")) or (today or date.today()).isoformat()

    tag = TagRow(row_number=n, tag_name=tag_name, estado=estado, fecha_liberacion=fecha)
    index_raw = raw.get("test_pack_index")
    if index_raw is not None:
        idx = to_int_or_none(index_raw)
        if idx is None:
            raise ValidationError("test_pack_index", f"Índice de Test Pack inválido: '{index_raw}'", n)
        tag.test_pack_index = idx
    tag.test_pack_nombre = strip_or_none(raw.get("test_pack_nombre"))
    if raw.get("nombre_paquete") is not None:
        tag.test_pack = validate_test_pack_row(raw, None)
        tag.source_pack_id = to_int_or_none(raw.get("id_paquete"))
    if tag.test_pack_index is None and tag.test_pack_nombre is None and tag.test_pack is None:
        raise ValidationError("test_pack", "El TAG no referencia a ningún Test Pack", n)
    return tag


def classify_rows(raw_rows: List[RawRow], today: Optional[date] = None) -> List[ClassifiedRow]:
    """Turn raw rows into TestPackRow / TagRow / InvalidRow, keeping sheet order.

    Every test-pack-kind row, valid or not, takes the next zero-based
    pack_index so tag references stay positional.
    """
    out: List[ClassifiedRow] = []
    next_index = 0
    for raw in raw_rows:
        if is_tag_kind(raw):
            try:
                out.append(validate_tag_row(raw, today))
            except ValidationError as e:
                out.append(InvalidRow(raw.row_number, "tag", e))
            continue
        idx = next_index
        next_index += 1
        try:
            out.append(validate_test_pack_row(raw, idx))
        except ValidationError as e:
            out.append(InvalidRow(raw.row_number, "test_pack", e, pack_index=idx))
    return out


# ---------------------- Grouping / Linker ----------------------

@dataclass
class PackGroup:
    pack: TestPackRow
    tags: List[TagRow] = field(default_factory=list)


@dataclass
class LinkResult:
    groups: List[PackGroup] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    test_packs_skipped: int = 0
    tags_skipped: int = 0

    @property
    def rows_skipped(self) -> int:
        return self.test_packs_skipped + self.tags_skipped

    @property
    def tags_linked(self) -> int:
        return sum(len(g.tags) for g in self.groups)


def link_rows(rows: List[ClassifiedRow]) -> LinkResult:
    result = LinkResult()
    slots: Dict[int, Optional[PackGroup]] = {}
    by_name: Dict[str, PackGroup] = {}
    by_source: Dict[int, PackGroup] = {}
    pending_tags: List[TagRow] = []

    for row in rows:
        if isinstance(row, TestPackRow):
            group = PackGroup(row)
            result.groups.append(group)
            slots[row.pack_index] = group
            by_name.setdefault(row.nombre_paquete, group)
        elif isinstance(row, InvalidRow):
            if row.kind == "test_pack":
                slots[row.pack_index] = None
                result.test_packs_skipped += 1
            else:
                result.tags_skipped += 1
            result.errors.append(row.error.as_dict())
        else:
            pending_tags.append(row)

    pack_rows = len(slots)

    def resolve(tag: TagRow) -> PackGroup:
        if tag.test_pack_index is not None:
            idx = tag.test_pack_index
            if idx < 0 or idx >= pack_rows:
                raise LinkError(idx, f"Índice de Test Pack fuera de rango: {idx}", tag.row_number)
            group = slots[idx]
            if group is None:
                raise LinkError(idx, f"El Test Pack de la posición {idx} es inválido", tag.row_number)
            return group
        if tag.test_pack_nombre is None and tag.source_pack_id is not None:
            group = by_source.get(tag.source_pack_id)
            if group is None:
                group = PackGroup(tag.test_pack)
                result.groups.append(group)
                by_source[tag.source_pack_id] = group
            return group
        name = tag.test_pack_nombre or tag.test_pack.nombre_paquete
        group = by_name.get(name)
        if group is None:
            if tag.test_pack is None or tag.test_pack.nombre_paquete != name:
                raise LinkError(name, f"No se encontró el Test Pack '{name}'", tag.row_number)
            group = PackGroup(tag.test_pack)
            result.groups.append(group)
            by_name[name] = group
        return group

    for tag in pending_tags:
        try:
            resolve(tag).tags.append(tag)
        except LinkError as e:
            logger.warning("tag row %s skipped: %s", tag.row_number, e.message)
            result.tags_skipped += 1
            result.errors.append(e.as_dict())
    return result


# ---------------------- Bulk Writer ----------------------

@dataclass
class ImportSummary:
    test_packs_created: int = 0
    tags_created: int = 0
    test_packs_skipped: int = 0
    tags_skipped: int = 0
    test_pack_ids: List[int] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def rows_skipped(self) -> int:
        return self.test_packs_skipped + self.tags_skipped

    def as_dict(self) -> Dict[str, Any]:
        return {
            "test_packs_created": self.test_packs_created,
            "tags_created": self.tags_created,
            "test_packs_skipped": self.test_packs_skipped,
            "tags_skipped": self.tags_skipped,
            "rows_skipped": self.rows_skipped,
            "test_pack_ids": self.test_pack_ids,
            "errors": self.errors,
        }


def pack_estado(group: PackGroup) -> str:
    # a pack whose tags are all released is ready; packs without tags keep the sheet value
    if not group.tags:
        return group.pack.estado
    return "listo" if all(t.estado == "liberado" for t in group.tags) else "pendiente"


def _check_cancel(cancel, phase: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"Importación cancelada antes de la fase {phase}")


def write_groups(con, link: LinkResult, actor: Optional[Dict[str, Any]] = None, cancel=None) -> ImportSummary:
    """Insert all test packs, then all tags with the ids assigned to their packs.

    A failed test pack batch aborts the import with nothing written. A failed
    tag batch is rolled back on its own; the test packs already committed stay.
    """
    summary = ImportSummary(
        test_packs_skipped=link.test_packs_skipped,
        tags_skipped=link.tags_skipped,
        errors=list(link.errors),
    )
    if not link.groups:
        return summary
    cur = con.cursor()

    _check_cancel(cancel, "test_packs")
    pack_ids: List[int] = []
    try:
        for g in link.groups:
            cur.execute(
                """
                INSERT INTO test_packs(nombre_paquete, itr_asociado, sistema, subsistema, estado)
                VALUES (:nombre_paquete, :itr_asociado, :sistema, :subsistema, :estado)
                """,
                {**g.pack.as_record(), "estado": pack_estado(g)},
            )
            pack_ids.append(cur.lastrowid)
        log_activity(cur, "test_packs", "INSERT", None,
                     {"source": "import", "count": len(pack_ids), "ids": pack_ids}, actor)
        con.commit()
    except sqlite3.Error as e:
        con.rollback()
        logger.error("test pack batch rejected: %s", e)
        raise WriteError("test_packs", f"No se pudieron crear los Test Packs: {e}",
                         rows_skipped=summary.rows_skipped) from e
    summary.test_packs_created = len(pack_ids)
    summary.test_pack_ids = pack_ids

    tag_records = [
        {
            "tag_name": t.tag_name,
            "test_pack_id": pack_id,
            "estado": t.estado,
            "fecha_liberacion": t.fecha_liberacion if t.estado == "liberado" else None,
        }
        for g, pack_id in zip(link.groups, pack_ids)
        for t in g.tags
    ]
    if not tag_records:
        return summary

    _check_cancel(cancel, "tags")
    try:
        cur.executemany(
            """
            INSERT INTO tags(tag_name, test_pack_id, estado, fecha_liberacion)
            VALUES (:tag_name, :test_pack_id, :estado, :fecha_liberacion)
            """,
            tag_records,
        )
        log_activity(cur, "tags", "INSERT", None,
                     {"source": "import", "count": len(tag_records), "test_pack_ids": pack_ids}, actor)
        con.commit()
    except sqlite3.Error as e:
        con.rollback()
        logger.error("tag batch rejected after %d test packs were created: %s", len(pack_ids), e)
        raise WriteError("tags", f"Se crearon {len(pack_ids)} Test Packs pero los TAGs fueron rechazados: {e}",
                         rows_skipped=summary.rows_skipped, test_packs_created=len(pack_ids)) from e
    summary.tags_created = len(tag_records)
    return summary


def import_test_packs(con, content: bytes, actor: Optional[Dict[str, Any]] = None, cancel=None,
                      today: Optional[date] = None) -> ImportSummary:
    raw_rows = parse_workbook(content)
    link = link_rows(classify_rows(raw_rows, today))
    summary = write_groups(con, link, actor, cancel)
    logger.info(
        "test pack import: %d packs, %d tags created, %d rows skipped",
        summary.test_packs_created, summary.tags_created, summary.rows_skipped,
    )
    return summary
