#!/usr/bin/env python3
"""
MCP Server for Form Discovery
Provides tools:
1. discover_form_fields - Discover the fillable fields of one or more form URLs
2. fill_form - Fill a form from a completed user input template
3. health_check - Server status

This server implements the Model Context Protocol (MCP) specification for
integration with Claude Desktop and other MCP clients.
"""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from mcp.server.fastmcp import FastMCP

from . import __version__
from .exceptions import FormDiscoveryError
from .form_extractor import FormExtractor, save_form_data
from .form_filler import FormFiller
from .log_config import configure_logging

logger = logging.getLogger(__name__)

MAX_URLS = 5
OUTPUT_DIR = Path.cwd() / "extracted_form_data"

# Initialize FastMCP server
mcp = FastMCP("form-discovery-server")

# Global state of the form filling process
form_filling_state: Dict[str, Any] = {
    "browser_active": False,
    "last_result": None,
}

# Background fills still running
_background_tasks: Set[asyncio.Task] = set()


def _validate_urls(url: Optional[str], urls: Optional[List[str]]) -> List[str]:
    url_list: List[str] = []
    if urls and isinstance(urls, list):
        url_list = urls
    elif url and isinstance(url, str):
        url_list = [url]
    else:
        raise ValueError(f"Provide 'url' (string) or 'urls' (list of up to {MAX_URLS} URLs)")

    if len(url_list) > MAX_URLS:
        raise ValueError(f"Maximum of {MAX_URLS} URLs allowed per call")

    for u in url_list:
        if not u or not isinstance(u, str) or not u.startswith(('http://', 'https://')):
            raise ValueError(f"Invalid URL provided: {u}. URL must start with http:// or https://")
    return url_list


@mcp.tool()
async def discover_form_fields(url: Optional[str] = None, urls: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Discover form structure and fields from one or more web page URLs.

    Args:
        url: A single URL starting with http:// or https://
        urls: A list of URLs (max 5) to extract in parallel

    Returns:
        A summary plus one result per URL. Each successful result carries
        total_fields, required_fields, ambiguous_elements, the
        user_input_template to fill in, and the path of the saved JSON file.
    """
    try:
        url_list = _validate_urls(url, urls)
    except ValueError as e:
        logger.error(f"Form discovery failed: {e}")
        return {"status": "error", "message": str(e), "results": []}

    logger.info(f"Starting form discovery for {len(url_list)} URL(s)")
    sem = asyncio.Semaphore(min(MAX_URLS, len(url_list)))

    async def extract_one(target_url: str) -> Dict[str, Any]:
        async with sem:
            try:
                form_data = await FormExtractor().extract_form_data(target_url)
                path = save_form_data(form_data, directory=OUTPUT_DIR)
                logger.info(f"Form discovery complete for {target_url}. Fields: {form_data['total_fields']}")
                return {
                    "status": "success",
                    "message": f"Successfully extracted {form_data['total_fields']} form fields",
                    "url": target_url,
                    "page_title": form_data.get('page_title'),
                    "total_fields": form_data['total_fields'],
                    "required_fields": form_data['required_fields'],
                    "ambiguous_elements": form_data['ambiguous_elements'],
                    "user_input_template": form_data['user_input_template'],
                    "extracted_data_path": str(path),
                    "timestamp": form_data['timestamp'],
                }
            except Exception as e:
                error_msg = f"Form discovery failed for {target_url}: {e}"
                logger.error(error_msg)
                details = e.to_dict() if isinstance(e, FormDiscoveryError) else str(e)
                return {"status": "error", "message": error_msg, "url": target_url, "error_details": details}

    results = await asyncio.gather(*(extract_one(u) for u in url_list))

    success_count = sum(1 for r in results if r.get("status") == "success")
    error_count = len(results) - success_count
    overall_status = "success" if success_count and not error_count else ("partial" if success_count else "error")

    return {
        "status": overall_status,
        "total_urls": len(url_list),
        "succeeded": success_count,
        "failed": error_count,
        "results": list(results),
    }


@mcp.tool()
async def fill_form(form_data: Dict[str, Any], submit: bool = False) -> Dict[str, Any]:
    """
    Fill a form with the provided data.

    Without ``submit`` the browser opens, fills every field that has a value and
    stays open for the user to review and submit manually; the tool returns as
    soon as filling has started. With ``submit`` the form is submitted and the
    tool returns the final session state once the submission is confirmed or
    abandoned. Submission is refused when a visible required field has no value.

    Args:
        form_data: The discovery output with filled values. Only 'url' and
                   'user_input_template' are required:
                   {
                       "url": "https://example.com/apply",
                       "user_input_template": [
                           {"id": "email", "question": "Email", "value": "jo@example.com",
                            "required": true, "type": "email"}
                       ]
                   }
        submit: Submit the form and wait for a confirmation

    Returns:
        A dictionary with the status of the filling operation
    """
    missing_keys = [key for key in ('url', 'user_input_template') if key not in form_data]
    if missing_keys:
        return {"status": "error", "message": f"Missing required keys in form_data: {missing_keys}"}
    if not isinstance(form_data.get('user_input_template'), list):
        return {"status": "error", "message": "user_input_template must be a list of field objects"}

    url = form_data['url']
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    temp_path = save_form_data(form_data, f"temp_form_data_{timestamp}.json", OUTPUT_DIR)
    logger.info(f"Form data saved to temporary file: {temp_path}")

    async def fill_and_cleanup() -> Dict[str, Any]:
        form_filling_state["browser_active"] = True
        try:
            result = await FormFiller().fill_form(str(temp_path), submit=submit)
            form_filling_state["last_result"] = result
            logger.info(f"Form filling finished with status {result['status']}")
            return result
        finally:
            form_filling_state["browser_active"] = False
            try:
                temp_path.unlink()
            except OSError as cleanup_error:
                logger.warning(f"Could not clean up temp file: {cleanup_error}")

    fields_to_fill = len([f for f in form_data['user_input_template'] if str(f.get('value') or '').strip()])

    if submit:
        try:
            result = await fill_and_cleanup()
        except Exception as e:
            logger.error(f"Form filling failed: {e}")
            return {"status": "error", "message": f"Form filling failed: {e}", "url": url}
        return {"status": result['status'], "url": url, "fields_to_fill": fields_to_fill, "session": result}

    async def fill_in_background():
        try:
            await fill_and_cleanup()
        except Exception as e:
            logger.error(f"Background form filling error: {e}")

    task = asyncio.create_task(fill_in_background())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return {
        "status": "started",
        "message": "Form filling process started successfully",
        "url": url,
        "fields_to_fill": fields_to_fill,
        "browser_status": "opening",
        "note": "The browser will open and fill the form. It will remain open for you to review and submit manually.",
    }


@mcp.tool()
async def health_check() -> Dict[str, Any]:
    """
    Check the health status of the form discovery server.

    Returns:
        A dictionary containing the server status and active processes
    """
    return {
        "status": "healthy",
        "server": "form-discovery-server",
        "version": __version__,
        "browser_active": form_filling_state.get("browser_active", False),
        "last_result": form_filling_state.get("last_result"),
        "timestamp": datetime.now().isoformat(),
        "tools_available": ["discover_form_fields", "fill_form", "health_check"],
    }


@mcp.resource("server://info")
def get_server_info() -> str:
    """Get information about the form discovery server."""
    return f"""# Form Discovery Server

## Available Tools:

### 1. discover_form_fields
Discovers every fillable field of one or more form URLs (max {MAX_URLS}), including
custom and portal-rendered dropdown options.

### 2. fill_form
Fills a form from a completed user input template. Keeps the browser open for
review unless `submit` is set.

### 3. health_check
Server status and the result of the last filling run.

## Workflow:
1. Use `discover_form_fields` to get the form structure
2. Fill in the values of the returned `user_input_template`
3. Use `fill_form` with the completed data

## Server Status:
- Version: {__version__}
- Active: {form_filling_state.get('browser_active', False)}
- Timestamp: {datetime.now().isoformat()}
"""


def main():
    """Main entry point for the MCP server."""
    configure_logging('mcp_server')
    logger.info(f"Starting Form Discovery MCP Server v{__version__}...")
    logger.info("Available tools: discover_form_fields, fill_form, health_check")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
