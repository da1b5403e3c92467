"""Entry point launcher - runs rover.cli as a module"""
import runpy

if __name__ == "__main__":
    runpy.run_module("rover.cli", run_name="__main__")
