"""
Gateway DGII e-CF: despacho de envíos, recepción de contrapartes y CLI
"""
