import os

from app import create_app

app = create_app()


def main():
    """Run the development server (use gunicorn -c gunicorn_config.py wsgi:app in production)"""
    port = int(os.environ.get('PORT', 5001))
    print("\n" + "=" * 50)
    print("Starting local development server...")
    print(f"Access the system at: http://127.0.0.1:{port}")
    print("=" * 50 + "\n")
    app.run(host='127.0.0.1', port=port, debug=app.config.get('DEBUG', False))


if __name__ == '__main__':
    main()
