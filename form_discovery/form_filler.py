#!/usr/bin/env python3
"""
Form Filler - fill a live form from a filled ``user_input_template`` JSON file.

By default the browser stays open after filling so the form can be reviewed
and submitted by hand; ``--submit`` submits and waits for confirmation.
"""

import asyncio
import logging
import sys
from typing import Any, Dict, Optional

from .agents import TemplateAgent
from .config import build_config
from .driver import PlaywrightDriver
from .exceptions import FormDiscoveryError
from .log_config import configure_logging
from .session import ConfirmationSignature, FormSession

logger = logging.getLogger(__name__)


class FormFiller:
    def __init__(self, config=None, confirmation: Optional[ConfirmationSignature] = None):
        self.logger = logger
        self.config = build_config(config)
        self.confirmation = confirmation or ConfirmationSignature()

    async def fill_form(self, json_file_path: str, submit: bool = False) -> Dict[str, Any]:
        """Fill the form described by ``json_file_path``; returns the final session state."""
        agent = TemplateAgent.from_file(json_file_path)
        url = agent.form_data.get('url')
        if not url:
            raise FormDiscoveryError("URL is required", path=json_file_path)

        config = build_config(self.config)
        if not submit:
            # A person has to see the page to review and submit it
            config['browser']['headless'] = False

        async with PlaywrightDriver.launch(config) as driver:
            await driver.navigate(url)
            async with FormSession(driver, agent, self.confirmation, config) as session:
                try:
                    await session.discover()
                    snapshot = await session.fill()
                    self.logger.info(
                        f"Form filling completed: {len(session.state.filled)}/"
                        f"{len(snapshot.visible_fields)} fields filled"
                    )

                    if submit:
                        await session.submit()
                    else:
                        self.logger.info("=" * 60)
                        self.logger.info("FORM FILLING COMPLETED! Please review and submit the form when ready.")
                        self.logger.info("=" * 60)
                        await session.await_manual_submission()
                except FormDiscoveryError as e:
                    self.logger.error(f"Form filling stopped: {e}")
                return session.state.to_dict()


async def main():
    args = [a for a in sys.argv[1:] if a != '--submit']
    if len(args) != 1:
        print("Usage: form-discovery-fill <path_to_filled_json> [--submit]")
        print("Example: form-discovery-fill filled_form.json")
        sys.exit(1)

    configure_logging('form_filler')
    filler = FormFiller()
    try:
        state = await filler.fill_form(args[0], submit='--submit' in sys.argv)
    except FormDiscoveryError as e:
        print(f"\nForm filling failed: {e}")
        sys.exit(1)

    if state['status'] == 'confirmed':
        print("\nForm submitted and confirmed!")
    else:
        print(f"\nForm not confirmed ({state['status']}): {state.get('reason')}")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nProgram interrupted by user")


if __name__ == "__main__":
    run()
