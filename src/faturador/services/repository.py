"""Reads and guarded writes against the invoice tables.

Only the statements the emission core needs live here. Status writes carry
the expected current status in their WHERE clause, so a concurrent writer
that already moved the invoice makes the update a no-op instead of
overwriting it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from psycopg2.extras import Json

from faturador.models.invoice import Invoice, InvoiceStatus, Participant
from faturador.models.issuer import Issuer
from faturador.models.recipient import Address, Recipient
from faturador.services.database import Database

logger = logging.getLogger(__name__)

_INVOICE_COLUMNS = """
    id, empresa_id, tomador_id, mes_competencia, valor_total, discriminacao_final,
    status, codigo_servico_municipal, codigo_servico_federal, cnae_code, nbs_code,
    api_ref, api_provider, caminho_xml, caminho_pdf, data_emissao, mensagem_erro
"""


class InvoiceRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    # --- Reads ---

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        row = self._db.execute_single(
            f"SELECT {_INVOICE_COLUMNS} FROM notas_fiscais WHERE id = %s",
            (invoice_id,),
        )
        return Invoice.from_dict(row) if row else None

    def find_by_reference(self, reference: str) -> Invoice | None:
        """Return the invoice holding provider *reference*, if any."""
        row = self._db.execute_single(
            f"SELECT {_INVOICE_COLUMNS} FROM notas_fiscais WHERE api_ref = %s",
            (reference,),
        )
        return Invoice.from_dict(row) if row else None

    def get_participants(self, invoice_id: str) -> list[Participant]:
        rows = self._db.execute(
            """
            SELECT nfp.nota_fiscal_id, nfp.pessoa_id, nfp.valor_prestado,
                   nfp.percentual_participacao, p.nome_completo
            FROM nota_fiscal_pessoa nfp
            JOIN pessoas p ON nfp.pessoa_id = p.id
            WHERE nfp.nota_fiscal_id = %s
            ORDER BY p.nome_completo
            """,
            (invoice_id,),
        )
        return [Participant.from_dict(r) for r in rows]

    def get_issuer(self, issuer_id: str) -> Issuer | None:
        """Load the issuer with its registered address, if one exists."""
        row = self._db.execute_single("SELECT * FROM empresas WHERE id = %s", (issuer_id,))
        if not row:
            return None
        addr_row = self._db.execute_single(
            """
            SELECT * FROM enderecos
            WHERE entidade_tipo = 'Empresa' AND entidade_id = %s
            ORDER BY tipo_endereco
            LIMIT 1
            """,
            (issuer_id,),
        )
        inline = Address.from_dict(row)
        address = Address.from_dict(addr_row).merged_with(inline) if addr_row else inline
        return Issuer.from_dict(row, address=address)

    def get_recipient(self, recipient_id: str) -> Recipient | None:
        row = self._db.execute_single(
            """
            SELECT t.id, t.tipo_tomador, t.email, t.telefone, t.cep, t.cidade, t.uf,
                   t.codigo_municipio,
                   COALESCE(CASE WHEN t.tipo_tomador = 'PESSOA' THEN p.nome_completo
                                 ELSE e.razao_social END, t.nome_razao_social) AS nome_razao_social,
                   COALESCE(CASE WHEN t.tipo_tomador = 'PESSOA' THEN p.cpf
                                 ELSE e.cnpj END, t.cnpj_cpf) AS cnpj_cpf
            FROM tomadores t
            LEFT JOIN pessoas p ON t.pessoa_id = p.id
            LEFT JOIN empresas e ON t.empresa_id = e.id
            WHERE t.id = %s
            """,
            (recipient_id,),
        )
        return Recipient.from_dict(row) if row else None

    def get_primary_address(self, recipient_id: str) -> Address | None:
        """The recipient's primary address from ``enderecos_tomador``."""
        row = self._db.execute_single(
            """
            SELECT logradouro, numero, complemento, bairro, cidade, estado, cep,
                   cidade_codigo_ibge
            FROM enderecos_tomador
            WHERE tomador_id = %s AND tipo_endereco = 'principal'
            LIMIT 1
            """,
            (recipient_id,),
        )
        return Address.from_dict(row) if row else None

    def get_legacy_address(self, recipient_id: str) -> Address | None:
        """A generic ``enderecos`` record linked to the recipient."""
        row = self._db.execute_single(
            """
            SELECT * FROM enderecos
            WHERE entidade_tipo = 'Tomador' AND entidade_id = %s
            ORDER BY tipo_endereco
            LIMIT 1
            """,
            (recipient_id,),
        )
        return Address.from_dict(row) if row else None

    # --- Issuer registration ---

    def set_issuer_company_ref(self, issuer_id: str, company_ref: str) -> None:
        self._db.execute_update(
            "UPDATE empresas SET nfeio_empresa_id = %s WHERE id = %s",
            (company_ref, issuer_id),
        )

    def clear_issuer_company_ref(self, issuer_id: str) -> None:
        self._db.execute_update(
            "UPDATE empresas SET nfeio_empresa_id = NULL WHERE id = %s",
            (issuer_id,),
        )

    # --- Invoice state ---

    def mark_processing(self, invoice_id: str, reference: str, provider: str) -> bool:
        """Draft -> PROCESSANDO, binding the provider reference.

        Returns False if the invoice is no longer a draft or already holds a
        reference.
        """
        count = self._db.execute_update(
            """
            UPDATE notas_fiscais SET
                status = %s, api_ref = %s, api_provider = %s,
                mensagem_erro = NULL, updated_at = NOW()
            WHERE id = %s AND status = %s AND api_ref IS NULL
            """,
            (
                InvoiceStatus.PROCESSANDO.value,
                reference,
                provider,
                invoice_id,
                InvoiceStatus.RASCUNHO.value,
            ),
        )
        return count == 1

    def apply_status(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        *,
        expected: InvoiceStatus,
        xml_ref: str | None = None,
        pdf_ref: str | None = None,
        issued_at: datetime | None = None,
        error_payload: dict[str, Any] | None = None,
        provider: str | None = None,
    ) -> bool:
        """Move the invoice from *expected* to *status*.

        Document refs, issued-at and the error payload only overwrite stored
        values when given. Returns False if the stored status was not
        *expected*.
        """
        count = self._db.execute_update(
            """
            UPDATE notas_fiscais SET
                status = %(status)s,
                caminho_xml = COALESCE(%(xml)s, caminho_xml),
                caminho_pdf = COALESCE(%(pdf)s, caminho_pdf),
                data_emissao = COALESCE(%(issued_at)s, data_emissao),
                mensagem_erro = COALESCE(%(error)s, mensagem_erro),
                api_provider = COALESCE(%(provider)s, api_provider),
                updated_at = NOW()
            WHERE id = %(id)s AND status = %(expected)s
            """,
            {
                "status": status.value,
                "xml": xml_ref,
                "pdf": pdf_ref,
                "issued_at": issued_at,
                "error": Json(error_payload) if error_payload is not None else None,
                "provider": provider,
                "id": invoice_id,
                "expected": expected.value,
            },
        )
        if count != 1:
            logger.warning(
                "Status update %s -> %s skipped for invoice %s (status changed concurrently)",
                expected.value,
                status.value,
                invoice_id,
            )
        return count == 1

    def record_error_payload(self, invoice_id: str, payload: dict[str, Any]) -> None:
        """Store a diagnostic payload without touching the status."""
        self._db.execute_update(
            "UPDATE notas_fiscais SET mensagem_erro = %s, updated_at = NOW() WHERE id = %s",
            (Json(payload), invoice_id),
        )
