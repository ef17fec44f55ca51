from __future__ import annotations

import pytest

from faturador.services.exceptions import InvoiceBusyError
from faturador.utils.locks import invoice_guard


class TestInvoiceGuard:
    def test_busy_while_held(self, tmp_path):
        with invoice_guard("nf-1", tmp_path):
            with pytest.raises(InvoiceBusyError, match="nf-1"):
                with invoice_guard("nf-1", tmp_path):
                    pass

    def test_other_ids_do_not_contend(self, tmp_path):
        with invoice_guard("nf-1", tmp_path), invoice_guard("nf-2", tmp_path):
            pass

    def test_released_after_block(self, tmp_path):
        with invoice_guard("nf-1", tmp_path):
            pass
        with invoice_guard("nf-1", tmp_path):
            pass

    def test_released_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with invoice_guard("nf-1", tmp_path):
                raise RuntimeError("boom")
        with invoice_guard("nf-1", tmp_path):
            pass

    def test_unsafe_id_sanitized(self, tmp_path):
        with invoice_guard("../x/y", tmp_path):
            assert (tmp_path / "nf_.._x_y.lock").exists()
