"""Shared fixtures."""
import pytest

from erpsync.store.records import InMemoryRecordStore
from erpsync.store.spool import SpoolManager
from erpsync.store.state import SyncStateDB


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def state_db(tmp_path):
    return SyncStateDB(tmp_path / "state.db")


@pytest.fixture
def spool(tmp_path):
    return SpoolManager(tmp_path / "spool")


def make_line(doc, sku="A", qty=1, value=10.0, weight=1.0, customer="ACME LTDA"):
    """One raw ERP transaction line."""
    return {
        "nr_docto": doc,
        "cod_empresa": 1,
        "nome_pessoa": customer,
        "cidade_pessoa": "Curitiba",
        "uf_pessoa": "PR",
        "data_dcto": "2024-05-01T00:00:00",
        "cod_item": sku,
        "descricao": f"Item {sku}",
        "unidade": "UN",
        "quantidade": qty,
        "valor_liquido": value,
        "quantidade_kgl": weight,
    }
