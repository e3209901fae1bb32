"""Application entry point for the Myers Security admin panel UI."""

from myersadmin.webapp import create_app

app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
