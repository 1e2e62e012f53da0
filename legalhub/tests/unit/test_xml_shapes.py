from __future__ import annotations

import httpx
import pytest

from legalhub.core.errors import VendorFailureError, VendorShapeError
from legalhub.services.vendor.rest import parse_body
from legalhub.services.vendor.results import Empty, Raw, ScalarList, StructList, expect_structs, first_value
from legalhub.services.vendor.xml_shapes import clean_xml, escape_xml, parse_xml_response


_MOVEMENTS_ENVELOPE = """<?xml version="1.0" encoding="UTF-8"?>
<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/"
    xmlns:ns1="urn:vendor" xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
    xmlns:SOAP-ENC="http://schemas.xmlsoap.org/soap/encoding/">
<SOAP-ENV:Body>
<ns1:BuscaNovosAndamentosResponse>
<retorno xsi:type="SOAP-ENC:Array" SOAP-ENC:arrayType="tns:Andamento[2]">
<item xsi:type="tns:Andamento"><codAndamento xsi:type="xsd:int">101</codAndamento><codProcesso xsi:type="xsd:int">55</codProcesso><descricao xsi:type="xsd:string">Juntada &amp; despacho</descricao></item>
<item xsi:type="tns:Andamento"><codAndamento xsi:type="xsd:int">102</codAndamento><codProcesso xsi:type="xsd:int">55</codProcesso><descricao xsi:type="xsd:string">Conclusos</descricao></item>
</retorno>
</ns1:BuscaNovosAndamentosResponse>
</SOAP-ENV:Body>
</SOAP-ENV:Envelope>"""


def _envelope(body: str) -> str:
    return (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        f"<soap:Body>{body}</soap:Body></soap:Envelope>"
    )


def test_clean_xml_strips_prefixes_and_encoding_attributes() -> None:
    cleaned = clean_xml(_MOVEMENTS_ENVELOPE)
    assert "SOAP-ENV:" not in cleaned
    assert "xsi:type" not in cleaned
    assert "arrayType" not in cleaned
    assert cleaned.startswith("<Envelope>")


def test_retorno_items_parse_into_structs() -> None:
    result = parse_xml_response(_MOVEMENTS_ENVELOPE)
    assert isinstance(result, StructList)
    assert result.items == [
        {"codAndamento": 101, "codProcesso": 55, "descricao": "Juntada & despacho"},
        {"codAndamento": 102, "codProcesso": 55, "descricao": "Conclusos"},
    ]


def test_nested_item_arrays_become_lists() -> None:
    body = (
        "<ns1:BuscaNovosDocumentosResponse><retorno>"
        "<item><codDocumento>9</codDocumento><anexos><item>a.pdf</item><item>b.pdf</item></anexos></item>"
        "</retorno></ns1:BuscaNovosDocumentosResponse>"
    )
    result = parse_xml_response(_envelope(body))
    assert isinstance(result, StructList)
    assert result.items == [{"codDocumento": 9, "anexos": ["a.pdf", "b.pdf"]}]


def test_string_arrays_parse_into_scalars() -> None:
    body = "<ns1:ListaResponse><return><string>alpha</string><string> beta </string></return></ns1:ListaResponse>"
    result = parse_xml_response(_envelope(body))
    assert result == ScalarList(["alpha", "beta"])


def test_scalar_retorno_is_a_single_value() -> None:
    result = parse_xml_response(_envelope("<ns1:CadastrarNomeResponse><retorno>42</retorno></ns1:CadastrarNomeResponse>"))
    assert result == ScalarList(["42"])
    assert first_value(result, "codNome") == "42"


def test_empty_bodies_are_empty_results() -> None:
    assert isinstance(parse_xml_response(""), Empty)
    assert isinstance(parse_xml_response(_envelope("<ns1:Resp><retorno/></ns1:Resp>")), Empty)
    assert isinstance(parse_xml_response(_envelope("<ns1:Resp><retorno></retorno></ns1:Resp>")), Empty)


def test_soap_fault_raises_failure() -> None:
    body = "<soap:Fault><faultcode>Server</faultcode><faultstring>Token inv&aacute;lido</faultstring></soap:Fault>"
    with pytest.raises(VendorFailureError) as excinfo:
        parse_xml_response(_envelope(body))
    assert "SOAP fault" in str(excinfo.value)


def test_envelope_without_body_is_a_shape_error() -> None:
    with pytest.raises(VendorShapeError):
        parse_xml_response('<soap:Envelope xmlns:soap="x"><soap:Header/></soap:Envelope>')


def test_bare_xml_document_with_repeated_records() -> None:
    xml = (
        "<andamentos><andamento><codAndamento>1</codAndamento></andamento>"
        "<andamento><codAndamento>2</codAndamento></andamento></andamentos>"
    )
    result = parse_xml_response(xml)
    assert result == StructList([{"codAndamento": 1}, {"codAndamento": 2}])


def test_escape_xml_covers_markup_characters() -> None:
    assert escape_xml("<a & 'b' \"c\">") == "&lt;a &amp; &apos;b&apos; &quot;c&quot;&gt;"


def test_rest_body_sniffing() -> None:
    assert parse_body(httpx.Response(200, json=[{"codPublicacao": 1}])) == StructList([{"codPublicacao": 1}])
    assert parse_body(httpx.Response(200, json={"codNome": 7})) == StructList([{"codNome": 7}])
    assert isinstance(parse_body(httpx.Response(200, json=[])), Empty)
    assert parse_body(httpx.Response(200, json=["1", 2])) == ScalarList(["1", "2"])
    assert isinstance(parse_body(httpx.Response(200, text="   ")), Empty)
    assert parse_body(httpx.Response(200, text="OK")) == Raw("OK")
    xml = httpx.Response(200, text="<lista><retorno>5</retorno></lista>", headers={"content-type": "text/xml"})
    assert parse_body(xml) == ScalarList(["5"])


def test_invalid_json_is_a_shape_error() -> None:
    response = httpx.Response(200, text="{broken", headers={"content-type": "application/json"})
    with pytest.raises(VendorShapeError):
        parse_body(response)


def test_expect_structs_rejects_unexpected_shapes() -> None:
    assert expect_structs(Empty(), operation="op") == []
    assert expect_structs(ScalarList([]), operation="op") == []
    with pytest.raises(VendorShapeError):
        expect_structs(Raw("<html>maintenance</html>"), operation="op")
    with pytest.raises(VendorShapeError):
        expect_structs(ScalarList(["1"]), operation="op")
