
# Names used by the EAGLE snapshot layout.
#
# header - global per-dataset attributes of the 'Header' group
# hashtable - 'HashTable' group holding the per-class shard index
# units - per-dataset attributes consumed by the unit normalizer

header = {
    'group' : 'Header',
    'attrs' : {'expansion_factor' : 'ExpansionFactor',
               'hubble_param'     : 'HubbleParam',
               'box_size'         : 'BoxSize',
               'redshift'         : 'Redshift',
               'num_files'        : 'NumFilesPerSnapshot',
               'npart_file'       : 'NumPart_ThisFile',
               'npart_total'      : 'NumPart_Total',
               'npart_highword'   : 'NumPart_Total_HighWord',
               'mass_table'       : 'MassTable'}
}

hashtable = {
    'group'      : 'HashTable',
    'bits'       : 'HashBits',
    # arrays of length n_shards, identical in every shard
    'first_key'  : 'FirstKeyInFile',
    'last_key'   : 'LastKeyInFile',
    'num_keys'   : 'NumKeysInFile',
    # per shard: record count for each key in [first_key, last_key]
    'cell_count' : 'NumParticleInCell',
}

units = {
    'aexp_exponent' : 'aexp-scale-exponent',
    'h_exponent'    : 'h-scale-exponent',
    'cgs_factor'    : 'CGSConversionFactor',
    'description'   : 'VarDescription',
}


def particle_group(itype):
    return f"PartType{itype}"


def hashtable_group(itype):
    return f"{hashtable['group']}/{particle_group(itype)}"
