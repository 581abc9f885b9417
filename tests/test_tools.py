import asyncio

from mcp.server.fastmcp import FastMCP

from rechnung.api.tools import register_tools


def test_all_backends_register_their_tools():
    server = FastMCP("rechnung-test")

    loaded = register_tools(server)

    assert loaded == [
        "rechnung.backends.generation",
        "rechnung.backends.cancellation",
        "rechnung.backends.automations",
        "rechnung.backends.einvoice",
    ]
    names = {tool.name for tool in asyncio.run(server.list_tools())}
    assert names == {
        "generate_invoice",
        "get_invoice",
        "set_invoice_status",
        "get_next_invoice_number",
        "cancel_invoice",
        "run_invoice_automations",
        "get_invoice_automation",
        "save_invoice_automation",
        "deactivate_invoice_automation",
        "export_e_invoice",
    }
