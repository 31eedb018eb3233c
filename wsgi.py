from mailpipe import create_app

app = create_app()

# Run with a single scheduler process per deployment:
#   SCHEDULER_ENABLED=true gunicorn -w 1 wsgi:app
