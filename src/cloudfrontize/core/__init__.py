"""
Core primitives of the edge runtime.

- variable_store: bake values and the allow-listed env
- sandbox: evaluates one plugin file behind an import gate
- registry: discovers plugins and owns the StageMap and its hot reload
- records: CloudFront event records and header multimaps
- header_policy: warns on restricted header mutation
- edge_logger: self-logging (stderr echo plus TSV)
- errors: the exception taxonomy
"""
