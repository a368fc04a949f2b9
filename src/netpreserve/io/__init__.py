"""File input/output for embedding applications and the CLI."""

from netpreserve.io.loaders import (
    assignment_from_gene_lists,
    load_expression_matrix,
    load_gene_lists,
    load_module_assignment,
    load_sample_metadata,
)
from netpreserve.io.writers import (
    write_eigengenes,
    write_expression_matrix,
    write_gene_lists,
    write_json,
    write_module_assignment,
    write_preservation_table,
)

__all__ = [
    'assignment_from_gene_lists',
    'load_expression_matrix',
    'load_gene_lists',
    'load_module_assignment',
    'load_sample_metadata',
    'write_eigengenes',
    'write_expression_matrix',
    'write_gene_lists',
    'write_json',
    'write_module_assignment',
    'write_preservation_table',
]
