from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="teaching-center-billing",
    version="1.0.0",
    description="Membership pricing, monthly payment generation and financial reporting for a teaching center",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=[
        'api',
        'app',
        'app_logger',
        'app_models',
        'billing',
        'build',
        'config',
        'errors',
        'forms',
        'health',
        'reports',
        'security',
        'services',
        'wsgi',
    ],
    include_package_data=True,
    install_requires=[
        'Flask>=2.3,<4',
        'Flask-SQLAlchemy>=3.0.5',
        'Flask-WTF>=1.2.1',
        'python-dotenv>=1.0.0',
        'SQLAlchemy>=2.0',
        'WTForms>=3.0.1',
        'Werkzeug>=2.3.7',
        'gunicorn>=21.2.0',
        'bcrypt>=4.0.1',
        'click>=8.1',
    ],
    extras_require={
        'postgres': ['psycopg2-binary>=2.9.9'],
        'test': ['pytest>=7.4'],
    },
    python_requires='>=3.9',
    classifiers=[
        "Programming Language :: Python :: 3",
        "Framework :: Flask",
        "Operating System :: OS Independent",
    ],
    entry_points={
        'console_scripts': [
            'teaching-center-billing=wsgi:main',
        ],
    },
)
