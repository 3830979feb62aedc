"""Site strategies loaded by site_strategies.load_custom_parsers."""
