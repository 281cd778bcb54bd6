#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
CHD Batch Converter - Core Package

chdman command model, container extraction, CUE/GDI parsing and the file
operations the pipelines are built on.
"""

from .chdman import cores_per_conversion, select_mode
from .extraction import decompress, extract_archive, find_primary_target
from .sidecar import referenced_files_from_cue, referenced_files_from_gdi, resolve_sidecar_files

__all__ = [
    'cores_per_conversion',
    'decompress',
    'extract_archive',
    'find_primary_target',
    'referenced_files_from_cue',
    'referenced_files_from_gdi',
    'resolve_sidecar_files',
    'select_mode',
]
