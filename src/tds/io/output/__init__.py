from tds.io.output.exporters import (
    CsvExporter,
    JsonExporter,
    ResultExporter,
    build_exporter,
    export,
    read_exported_paths,
)

__all__ = [
    "CsvExporter",
    "JsonExporter",
    "ResultExporter",
    "build_exporter",
    "export",
    "read_exported_paths",
]
