from wabridge.cli import app

app()
