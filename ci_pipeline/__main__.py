from ci_pipeline.cli import cli

cli()
