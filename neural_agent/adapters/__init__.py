"""Built-in adapters, loadable by name with ``--adapter``."""
