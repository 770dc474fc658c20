"""Console du moteur (Flet).

Envoie des scripts Lua ou des commandes de ressources au moteur et affiche
tout ce que le moteur renvoie.

Usage: python client.py [--host 127.0.0.1] [--port 10001]
"""
import argparse
import re
import threading

import flet as ft

from network.errors import ConnectInProgress, ConsoleError, MalformedCommandInput
from network.state_machine import ConnectionManager
from parser import InputMode, InputParser
import vocabulary

SERVER_IP = "127.0.0.1"
SERVER_PORT = 10001

# dernier identifiant saisi, ex: "Vec3.no" dans "local v = Vec3.no"
LAST_WORD = re.compile(r"[A-Za-z_][\w.]*$")

STATUS_BY_EVENT = {
    "connecting": ("Connexion à {host}:{port}...", "orange"),
    "connected": ("Connecté à {host}:{port}", "green"),
    "disconnected": ("Déconnecté", "red"),
    "remote_closed": ("Déconnecté (connexion fermée par le moteur)", "red"),
}


def main_factory(manager: ConnectionManager):
    def main(page: ft.Page):
        page.title = "Console"
        page.window.width = 700
        page.window.height = 500

        # un seul thread à la fois touche la page (réception et saisie)
        ui_lock = threading.Lock()

        output = ft.Text("", selectable=True, font_family="monospace")
        output_view = ft.Column([output], scroll="auto", auto_scroll=True, expand=True)
        status = ft.Text("Déconnecté", color="red")
        input_field = ft.TextField(label="Entrée", expand=True)
        mode_dropdown = ft.Dropdown(
            width=140,
            value=InputMode.SCRIPT.value,
            options=[
                ft.DropdownOption(key=InputMode.SCRIPT.value, text="Script"),
                ft.DropdownOption(key=InputMode.COMMAND.value, text="Commande"),
            ],
        )
        suggestions_row = ft.Row(wrap=True)

        # ----------------------------
        # Affichage
        # ----------------------------
        def afficher(text):
            with ui_lock:
                output.value += text
                page.update()

        def set_status(text, color):
            with ui_lock:
                status.value = text
                status.color = color
                page.update()

        def on_connection_event(event, data):
            if event in STATUS_BY_EVENT:
                text, color = STATUS_BY_EVENT[event]
                set_status(text.format(**data), color)
            elif "error" in data:
                set_status(str(data["error"]), "red")

        manager.sink = afficher
        manager.add_listener(on_connection_event)

        # ----------------------------
        # Connexion
        # ----------------------------
        def _connecter():
            try:
                manager.connect()
            except ConnectInProgress as ex:
                set_status(str(ex), "orange")
            except ConsoleError as ex:
                # déjà affiché par on_connection_event
                print(f"[CONSOLE] {ex}")

        def connecter(e=None):
            threading.Thread(target=_connecter, daemon=True).start()

        # ----------------------------
        # Saisie
        # ----------------------------
        def choisir_suggestion(e):
            name = e.control.data
            with ui_lock:
                line = input_field.value or ""
                input_field.value = LAST_WORD.sub("", line) + name
                suggestions_row.controls.clear()
                page.update()

        def proposer(e=None):
            with ui_lock:
                suggestions_row.controls.clear()
                if mode_dropdown.value == InputMode.SCRIPT.value:
                    match = LAST_WORD.search(input_field.value or "")
                    if match:
                        for name in vocabulary.suggestions(match.group(0)):
                            suggestions_row.controls.append(
                                ft.Button(content=ft.Text(name), on_click=choisir_suggestion, data=name)
                            )
                page.update()

        def envoyer(e=None):
            line = input_field.value or ""
            if not line.strip():
                return

            try:
                mode = InputMode.parse(mode_dropdown.value)
                msg = InputParser.parse(line, mode)
            except (MalformedCommandInput, ValueError) as ex:
                set_status(str(ex), "red")
                return

            try:
                manager.send_message(msg)
            except ConsoleError as ex:
                print(f"[CONSOLE] Erreur envoyer: {ex}")
                set_status(f"Erreur envoi: {ex}", "red")
                return

            with ui_lock:
                input_field.value = ""
                suggestions_row.controls.clear()
                page.update()

        input_field.on_submit = envoyer
        input_field.on_change = proposer

        # Layout
        page.add(ft.Column([
            ft.Row([
                ft.Button(content=ft.Text("Connecter"), on_click=connecter),
                status,
            ]),
            ft.Divider(),
            output_view,
            ft.Divider(),
            suggestions_row,
            ft.Row([mode_dropdown, input_field, ft.Button(content=ft.Text("Envoyer"), on_click=envoyer)]),
        ], expand=True))

        # comme la console d'origine: connexion dès l'ouverture
        connecter()

    return main


def build_arg_parser():
    parser = argparse.ArgumentParser(description="Console distante du moteur")
    parser.add_argument("--host", default=SERVER_IP, help="adresse du moteur")
    parser.add_argument("--port", type=int, default=SERVER_PORT, help="port de la console du moteur")
    return parser


def run(argv=None):
    args = build_arg_parser().parse_args(argv)
    manager = ConnectionManager(args.host, args.port)
    try:
        ft.run(main_factory(manager))
    finally:
        manager.disconnect()


if __name__ == "__main__":
    run()
