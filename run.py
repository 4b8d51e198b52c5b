from dotenv import load_dotenv

load_dotenv()

from schoolit import create_app  # noqa: E402

app = create_app()
if app is None:
    raise RuntimeError("create_app() devolvió None. Revisá el return app al final de schoolit/__init__.py")

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=8000, debug=True)
