from .cli import app

app(prog_name="commit-smith")
