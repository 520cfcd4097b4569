# smart_get/filetype.py
"""
Content-based file type detection.

Signatures and text heuristics are kept as ordered (predicate, label)
tables. The first predicate that matches decides the label.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

SNIFF_BYTES = 2048

Rule = Tuple[Callable[[bytes], bool], str]


def _at(offset: int, signature: bytes) -> Callable[[bytes], bool]:
    return lambda data: data[offset:offset + len(signature)] == signature


def _starts(signature: bytes) -> Callable[[bytes], bool]:
    return _at(0, signature)


def _all(*predicates) -> Callable[[bytes], bool]:
    return lambda data: all(p(data) for p in predicates)


def _zip_member(marker: bytes) -> Callable[[bytes], bool]:
    return lambda data: data.startswith(b"PK\x03\x04") and marker in data[:100]


def _mask(offset: int, mask: int, value: int) -> Callable[[bytes], bool]:
    return lambda data: len(data) > offset and (data[offset] & mask) == value


SIGNATURES: List[Rule] = [
    # Video
    (_all(_starts(b"\x00\x00\x00"), _at(4, b"ftyp")), "mp4"),
    (_starts(b"\x1a\x45\xdf\xa3"), "mkv"),
    (_all(_starts(b"RIFF"), _at(8, b"AVI")), "avi"),
    (_at(4, b"moov"), "mov"),
    # Audio
    (_starts(b"ID3"), "mp3"),
    (_all(_starts(b"\xff"), _mask(1, 0xE0, 0xE0)), "mp3"),
    (_starts(b"fLaC"), "flac"),
    (_starts(b"OggS"), "ogg"),
    (_all(_starts(b"RIFF"), _at(8, b"WAVE")), "wav"),
    (_all(_starts(b"\x00\x00\x00"), _at(4, b"mdat")), "m4a"),
    (_starts(b"\x30\x26\xb2\x75"), "wma"),
    (_all(_starts(b"\xff"), _mask(1, 0xF6, 0xF0)), "aac"),
    # Image
    (_starts(b"\x89PNG"), "png"),
    (_starts(b"\xff\xd8\xff"), "jpg"),
    (_starts(b"GIF"), "gif"),
    (_starts(b"BM"), "bmp"),
    (_starts(b"II*\x00"), "tif"),
    (_starts(b"MM\x00*"), "tif"),
    (_starts(b"\x00\x00\x01\x00"), "ico"),
    (_all(_starts(b"RIFF"), _at(8, b"WEBP")), "webp"),
    (_starts(b"\x00\x18\x0c\x0a"), "heic"),
    # Documents and archives
    (_starts(b"%PDF"), "pdf"),
    (_starts(b"\xd0\xcf\x11\xe0"), "doc"),
    (_zip_member(b"[Content_Types].xml"), "docx"),
    (_zip_member(b"xl/"), "xlsx"),
    (_zip_member(b"ppt/"), "pptx"),
    (_zip_member(b"mimetypeapplication/epub+zip"), "epub"),
    (_zip_member(b"META-INF/MANIFEST.MF"), "jar"),
    (_zip_member(b"AndroidManifest.xml"), "apk"),
    (_zip_member(b"mimetypeapplication/vnd.oasis.opendocument.text"), "odt"),
    (_zip_member(b"mimetypeapplication/vnd.oasis.opendocument.spreadsheet"), "ods"),
    (_zip_member(b"mimetypeapplication/vnd.oasis.opendocument.presentation"), "odp"),
    (_starts(b"PK\x03\x04"), "zip"),
    (_starts(b"Rar!"), "rar"),
    (_starts(b"7z\xbc\xaf"), "7z"),
    (_starts(b"\x1f\x8b"), "gz"),
    (_starts(b"BZh"), "bz2"),
    (_starts(b"\xfd7zX"), "xz"),
    (_starts(b"ustar"), "tar"),
    (_starts(b"CD00"), "iso"),
    (_starts(b"\x78\x01"), "dmg"),
    # Executables
    (_starts(b"MZ"), "exe"),
    (_starts(b"\x7fELF"), "elf"),
    (_starts(b"\xca\xfe\xba\xbe"), "class"),
    (_starts(b"#!"), "sh"),
    (_starts(b"\xff\xfe"), "bat"),
    (_starts(b"\xcf\xfa\xed\xfe"), "macho"),
    # Other
    (_starts(b"8BPS"), "psd"),
    (_starts(b"%!"), "ps"),
    (_starts(b"!<arch>"), "deb"),
    (_starts(b"bplist"), "plist"),
    (_starts(b"SQLi"), "sqlite"),
    (_starts(b"\x00\x01\x00\x00"), "ttf"),
    (_starts(b"OTTO"), "otf"),
    (_starts(b"<?xml"), "xml"),
    (_starts(b"{\n"), "json"),
    (_starts(b"<!DOCTYPE"), "html"),
    (_starts(b"\xef\xbb\xbf"), "txt"),
    (_starts(b"\xfe\xff"), "txt"),
    (_starts(b"\x00\x00\xfe\xff"), "txt"),
]


def _has(*needles: str) -> Callable[[str], bool]:
    return lambda text: any(n in text for n in needles)


def _has_all(*needles: str) -> Callable[[str], bool]:
    return lambda text: all(n in text for n in needles)


def _prefix(*prefixes: str) -> Callable[[str], bool]:
    return lambda text: text.startswith(prefixes)


def _lower_has(*needles: str) -> Callable[[str], bool]:
    return lambda text: any(n in text.lower() for n in needles)


TEXT_HEURISTICS: List[Tuple[Callable[[str], bool], str]] = [
    (lambda t: t.startswith("#!/") and "python" in t, "py"),
    (_prefix("# -*- coding:"), "py"),
    (lambda t: t.startswith("{") and "cells" in t and "nbformat" in t, "ipynb"),
    (_prefix("{", "["), "json"),
    (lambda t: t.startswith("---") or ": " in t, "yaml"),
    (_has_all(",", "\n"), "csv"),
    (_has_all("\t", "\n"), "tsv"),
    (_has("# ", "## ", "- "), "md"),
    (_lower_has("select ", "create table"), "sql"),
    (_prefix("<html", "<!DOCTYPE html"), "html"),
    (_prefix("<?xml"), "xml"),
    (lambda t: "=" in t and any(s in t for s in ("[section]", "[main]", "[DEFAULT]")), "ini"),
    (lambda t: "=" in t and (".conf" in t or ".cfg" in t), "conf"),
    (_has("[tool.", "[package]"), "toml"),
    (lambda t: t.startswith("# R") or "<- function(" in t, "r"),
    (_prefix("#!/bin/bash", "#!/bin/sh", "#!/usr/bin/env bash"), "sh"),
    (_has("function ", "const ", "let "), "js"),
    (_has_all("import ", "from "), "js"),
    (_has(": string", ": number"), "ts"),
    (_has("#include", "int main("), "c"),
    (_has_all("#ifndef", "#define"), "h"),
    (_has("public class "), "java"),
    (_has_all("object ", "extends App"), "scala"),
    (_has_all("package main", "func main("), "go"),
    (_has_all("fn main()", "extern crate"), "rs"),
    (_prefix("<?php"), "php"),
    (lambda t: t.startswith("#!/usr/bin/env ruby") or "def " in t, "rb"),
    (_prefix("#!/usr/bin/perl"), "pl"),
    (_has_all("import Foundation", "func "), "swift"),
    (_has_all("fun main(", ": String"), "kt"),
    (_has_all("void main()", "import 'dart:"), "dart"),
    (_has_all("function ", "end"), "lua"),
    (_has("section .text", "global _start"), "asm"),
    (_has("NumPy format"), "npy"),
    (_has("PKL", "pickle"), "pkl"),
    (_has("joblib"), "joblib"),
    (_has("HDF5"), "h5"),
    (_has("MATLAB 5.0 MAT-file"), "mat"),
    (_has("FEATHER"), "feather"),
    (_has("PAR1"), "parquet"),
    (_has("ORC"), "orc"),
    (_has("Objavro"), "avro"),
    (_has("RDX2"), "rds"),
    (_has("RData"), "rdata"),
    (_lower_has("error", "warn", "info"), "log"),
    (_has(","), "csv"),
    (_has("\t"), "tsv"),
]


def detect_file_type(data: bytes) -> Optional[str]:
    """Label for the content, e.g. "png", or None when nothing matches."""
    if len(data) < 4:
        return None
    for predicate, label in SIGNATURES:
        if predicate(data):
            return label

    try:
        text = data[:SNIFF_BYTES].decode("utf-8").strip()
    except UnicodeDecodeError:
        return None
    for predicate, label in TEXT_HEURISTICS:
        if predicate(text):
            return label
    return None


def fix_file_extension(path: Path) -> Path:
    """Rename path so its extension matches the detected content. Returns the final path."""
    path = Path(path)
    with open(path, 'rb') as f:
        head = f.read(SNIFF_BYTES)

    detected = detect_file_type(head)
    if detected is None:
        return path

    new_path = path.with_name(f"{path.stem}.{detected}")
    if new_path == path:
        return path
    if new_path.exists():
        logger.warning("Detected type %s but %s already exists, keeping %s", detected, new_path.name, path.name)
        return path

    path.rename(new_path)
    logger.info("Detected file type: %s", detected.upper())
    return new_path
