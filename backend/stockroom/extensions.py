# Overview: Flask extension instances for database, migrations, and the remote store.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .remote import RemoteStoreExtension

db = SQLAlchemy()
migrate = Migrate()
remote = RemoteStoreExtension()
