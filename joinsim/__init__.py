"""Load simulator for BigBlueButton meetings."""
