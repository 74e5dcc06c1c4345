"""Connection URL building."""
from sqlalchemy.engine import make_url

from database import mssql_url


def test_credentials_with_reserved_characters_survive():
     url = make_url(mssql_url("escrow@corp", "p@ss/w:rd#1", "db.example", "1433", "escrow"))

     assert url.drivername == "mssql+pymssql"
     assert url.username == "escrow@corp"
     assert url.password == "p@ss/w:rd#1"
     assert url.host == "db.example"
     assert url.port == 1433
     assert url.database == "escrow"


def test_missing_credentials_render_empty():
     assert mssql_url(None, None, "db", "1433", "escrow") == "mssql+pymssql://:@db:1433/escrow"
